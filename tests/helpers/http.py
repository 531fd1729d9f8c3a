"""Canned ``requests`` responses for exchange-client tests."""

from typing import Any, Dict, List, Tuple, Union
from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

from requests.exceptions import HTTPError


def response(data: Any = None, status: int = 200, text: str = "") -> Mock:
    resp = Mock()
    resp.status_code = status
    resp.text = text
    resp.json.return_value = {} if data is None else data
    if status >= 400:
        resp.raise_for_status.side_effect = HTTPError(response=resp)
    return resp


class Router:
    """
    side_effect for a patched ``requests.request`` that answers by
    (method, path). A list value is consumed one response per call.
    """

    def __init__(self, routes: Dict[Tuple[str, str], Union[Mock, List[Mock]]]):
        self.routes = routes
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def __call__(self, method, url, **kwargs):
        path = urlparse(url).path
        self.calls.append((method, url, kwargs))
        answer = self.routes.get((method, path))
        if answer is None:
            raise AssertionError(f"unexpected request {method} {url}")
        if isinstance(answer, list):
            return answer.pop(0)
        return answer

    def paths(self, method: str = None) -> List[str]:
        return [urlparse(url).path for m, url, _ in self.calls if method is None or m == method]

    def query(self, index: int = -1) -> Dict[str, List[str]]:
        return parse_qs(urlparse(self.calls[index][1]).query)
