# Event Ledger モジュール
from headline_ab.store.event_ledger import EventLedger, events_to_csv, events_to_json

__all__ = [
    "EventLedger",
    "events_to_csv",
    "events_to_json",
]
