from conductor.state.store import StateStore

__all__ = ["StateStore"]
