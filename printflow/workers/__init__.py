"""Background workers for async processing."""
from .maintenance import MaintenanceWorker, start_maintenance_worker
from .render_worker import LocalFileRenderer, RenderWorker, start_render_worker

__all__ = [
    "LocalFileRenderer",
    "MaintenanceWorker",
    "RenderWorker",
    "start_maintenance_worker",
    "start_render_worker",
]
