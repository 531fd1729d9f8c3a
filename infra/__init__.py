"""Infrastructure modules for cyclebot"""

from .metrics import MetricsRecorder, PassStats  # noqa: F401
from .repository import AccumulationRepository, CycleRepository  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"PassStats",
	"CycleRepository",
	"AccumulationRepository",
]
