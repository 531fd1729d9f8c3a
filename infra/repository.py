"""
cyclebot Infrastructure: Cycle and Accumulation repositories

Each collection is one JSON file holding a list of documents in the stored
camelCase format. Writes are atomic (temp file + rename) and every
operation runs under the collection's lock. Documents are re-read on each
call, so callers always get fresh copies they are free to mutate.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.cycle import Accumulation, Cycle, CycleStatus, utcnow
from core.exceptions import RepositoryUnavailable

logger = logging.getLogger(__name__)


class JsonCollection:
    """A list of JSON documents persisted in a single file."""

    def __init__(self, path: str, name: str):
        self.path = Path(path)
        self.name = name
        self.lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> List[Dict[str, Any]]:
        """
        Load every document.

        Raises:
            RepositoryUnavailable: if the file is unreadable or not a JSON list
        """
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise RepositoryUnavailable(f"cannot read {self.name} store {self.path}: {e}") from e
        if not text.strip():
            return []
        try:
            data = json.loads(text)
        except ValueError as e:
            raise RepositoryUnavailable(f"corrupt {self.name} store {self.path}: {e}") from e
        if not isinstance(data, list):
            raise RepositoryUnavailable(f"corrupt {self.name} store {self.path}: expected a list")
        return data

    def write(self, documents: List[Dict[str, Any]]) -> None:
        """Replace the file contents atomically."""
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.name}_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(documents, f, indent=2)
            os.replace(temp_path, self.path)
        except OSError as e:
            raise RepositoryUnavailable(f"cannot write {self.name} store {self.path}: {e}") from e

    def check(self) -> None:
        """Fail fast when the store cannot be read."""
        with self.lock:
            self.read()

    @staticmethod
    def next_id(documents: List[Dict[str, Any]]) -> int:
        return max((int(doc.get("idInt", 0)) for doc in documents), default=0) + 1


class CycleRepository:
    """Persistence for Cycle records, keyed by integer id."""

    def __init__(self, path: str):
        self._collection = JsonCollection(path, "cycles")
        logger.info(f"Initialized CycleRepository at {self._collection.path}")

    def check(self) -> None:
        self._collection.check()

    def _load(self, predicate: Optional[Callable[[Dict[str, Any]], bool]] = None) -> List[Cycle]:
        with self._collection.lock:
            docs = self._collection.read()
        cycles = []
        for doc in docs:
            if predicate is not None and not predicate(doc):
                continue
            try:
                cycles.append(Cycle.from_document(doc))
            except (TypeError, ValueError) as e:
                logger.error(f"Skipping invalid cycle document {doc.get('idInt')}: {e}")
        return cycles

    def find_all(self, descending: bool = True) -> List[Cycle]:
        cycles = self._load()
        cycles.sort(key=lambda c: c.id_int, reverse=descending)
        return cycles

    def find_by_id_int(self, id_int: int) -> Optional[Cycle]:
        matches = self._load(lambda doc: int(doc.get("idInt", 0)) == id_int)
        return matches[0] if matches else None

    def find_by_exchange(self, exchange: str) -> List[Cycle]:
        exchange = exchange.upper()
        cycles = self._load(lambda doc: doc.get("exchange") == exchange)
        cycles.sort(key=lambda c: c.id_int, reverse=True)
        return cycles

    def find_by_status(self, status: str) -> List[Cycle]:
        cycles = self._load(lambda doc: doc.get("status") == status)
        cycles.sort(key=lambda c: c.id_int)
        return cycles

    def save(self, cycle: Cycle) -> int:
        """
        Store ``cycle``; an unsaved cycle (``id_int`` 0) gets the next integer
        id (max + 1), one that already has an id replaces the stored document.

        The id is also set on the passed object.
        """
        with self._collection.lock:
            docs = self._collection.read()
            if not cycle.id_int:
                cycle.id_int = JsonCollection.next_id(docs)
            else:
                docs = [doc for doc in docs if int(doc.get("idInt", 0)) != cycle.id_int]
            if cycle.created_at is None:
                cycle.created_at = utcnow()
            docs.append(cycle.to_document())
            self._collection.write(docs)
        logger.info(f"Saved cycle {cycle.id_int} ({cycle.exchange}, {cycle.status})")
        return cycle.id_int

    def update_by_id_int(self, id_int: int, fields: Dict[str, Any]) -> bool:
        """
        Merge document ``fields`` (camelCase keys) into one cycle.

        Returns:
            False when no cycle has that id
        """
        with self._collection.lock:
            docs = self._collection.read()
            for doc in docs:
                if int(doc.get("idInt", 0)) == id_int:
                    doc.update(fields)
                    self._collection.write(docs)
                    return True
        logger.warning(f"Update skipped: cycle {id_int} not found")
        return False

    def delete_by_id_int(self, id_int: int) -> bool:
        with self._collection.lock:
            docs = self._collection.read()
            remaining = [doc for doc in docs if int(doc.get("idInt", 0)) != id_int]
            if len(remaining) == len(docs):
                logger.warning(f"Delete skipped: cycle {id_int} not found")
                return False
            self._collection.write(remaining)
        logger.info(f"Deleted cycle {id_int}")
        return True

    def list_paginated(self, page: int, per_page: int) -> List[Cycle]:
        page = max(1, page)
        per_page = max(1, per_page)
        skip = (page - 1) * per_page
        return self.find_all(descending=True)[skip:skip + per_page]

    def count_by_field(self, field: str, value: Any) -> int:
        with self._collection.lock:
            docs = self._collection.read()
        return sum(1 for doc in docs if doc.get(field) == value)

    def count_by_status(self, status: str) -> int:
        return self.count_by_field("status", status)

    def get_statistics(self) -> Dict[str, Any]:
        """Counts per status plus gross buy/sell value of completed cycles."""
        stats: Dict[str, Any] = {
            "totalCycles": 0,
            "completedCycles": 0,
            "buyCycles": 0,
            "sellCycles": 0,
            "totalBuy": 0.0,
            "totalSell": 0.0,
            "gainAbsolute": 0.0,
            "gainPercent": 0.0,
        }
        for cycle in self.find_all():
            stats["totalCycles"] += 1
            if cycle.status == CycleStatus.COMPLETED.value:
                stats["completedCycles"] += 1
                stats["totalBuy"] += cycle.buy_price * cycle.quantity
                stats["totalSell"] += cycle.sell_price * cycle.quantity
            elif cycle.status == CycleStatus.BUY.value:
                stats["buyCycles"] += 1
            elif cycle.status == CycleStatus.SELL.value:
                stats["sellCycles"] += 1

        stats["gainAbsolute"] = stats["totalSell"] - stats["totalBuy"]
        if stats["totalBuy"] > 0:
            stats["gainPercent"] = stats["gainAbsolute"] / stats["totalBuy"] * 100
        return stats


class AccumulationRepository:
    """Append-mostly store of accumulation audit records."""

    def __init__(self, path: str):
        self._collection = JsonCollection(path, "accumulations")
        logger.info(f"Initialized AccumulationRepository at {self._collection.path}")

    def check(self) -> None:
        self._collection.check()

    def _load(self, exchange: Optional[str] = None) -> List[Accumulation]:
        with self._collection.lock:
            docs = self._collection.read()
        wanted = exchange.upper() if exchange else None
        records = [Accumulation.from_document(doc) for doc in docs
                   if wanted is None or doc.get("exchange") == wanted]
        records.sort(key=lambda a: a.id_int, reverse=True)
        return records

    def find_all(self) -> List[Accumulation]:
        return self._load()

    def find_by_exchange(self, exchange: str) -> List[Accumulation]:
        return self._load(exchange)

    def find_by_id_int(self, id_int: int) -> Optional[Accumulation]:
        for record in self._load():
            if record.id_int == id_int:
                return record
        return None

    def save(self, accumulation: Accumulation) -> int:
        with self._collection.lock:
            docs = self._collection.read()
            record = replace(accumulation, id_int=JsonCollection.next_id(docs))
            docs.append(record.to_document())
            self._collection.write(docs)
        logger.info(
            f"Saved accumulation {record.id_int} ({record.exchange}, cycle {record.cycle_id_int}, "
            f"{record.quantity:.8f} BTC)"
        )
        return record.id_int

    def delete_by_id_int(self, id_int: int) -> bool:
        with self._collection.lock:
            docs = self._collection.read()
            remaining = [doc for doc in docs if int(doc.get("idInt", 0)) != id_int]
            if len(remaining) == len(docs):
                return False
            self._collection.write(remaining)
        return True

    def count_by_exchange(self, exchange: str) -> int:
        return len(self._load(exchange))

    def get_total_accumulated_btc(self, exchange: str) -> float:
        return sum(record.quantity for record in self._load(exchange))

    def get_total_accumulated_value(self, exchange: str) -> float:
        """USDC the accumulated BTC would have fetched at the target sell prices."""
        return sum(record.target_value for record in self._load(exchange))

    def get_exchange_accumulation_stats(self, exchange: str) -> Dict[str, Any]:
        records = self._load(exchange)
        total_quantity = sum(r.quantity for r in records)
        original_value = sum(r.quantity * r.target_sell_price for r in records)
        cancel_value = sum(r.quantity * r.cancel_price for r in records)
        average_deviation = sum(r.deviation for r in records) / len(records) if records else 0.0
        return {
            "count": len(records),
            "totalQuantity": total_quantity,
            "totalOriginalValue": original_value,
            "totalCancelValue": cancel_value,
            "savedValue": original_value - cancel_value,
            "averageDeviation": average_deviation,
        }
