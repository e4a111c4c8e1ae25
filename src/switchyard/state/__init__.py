from switchyard.state.history import HistoryStore, HistoryStoreError

__all__ = ["HistoryStore", "HistoryStoreError"]
