from hlgrid.orchestrator.grid_worker import GridState, GridStatus, GridWorker, WorkerSettings
from hlgrid.orchestrator.supervisor import GridSupervisor

__all__ = ["GridState", "GridStatus", "GridSupervisor", "GridWorker", "WorkerSettings"]
