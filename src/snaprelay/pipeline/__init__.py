from .camera_pipeline import CameraPipeline, CameraPipelineConfig
from .scheduler import Scheduler, TickResult
from .supervisor import PipelineHandle, RelayConfig, Supervisor

__all__ = [
    "CameraPipeline",
    "CameraPipelineConfig",
    "PipelineHandle",
    "RelayConfig",
    "Scheduler",
    "Supervisor",
    "TickResult",
]
