from hlgrid.state.state_atomic import AtomicStateStore
from hlgrid.state.state_store import StateStore, list_grid_states

__all__ = ["AtomicStateStore", "StateStore", "list_grid_states"]
