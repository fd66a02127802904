import os
import threading

from phasekeeper.event_bus import EventBus, PhaseEvent


class AuditLogger:
    """
    Subscribes to an EventBus and appends every event to a JSONL file.
    """

    def __init__(self, file_path: str, event_bus: EventBus):
        self.file_path = file_path
        self.event_bus = event_bus
        self._lock = threading.Lock()

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)
        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: PhaseEvent) -> None:
        line = event.model_dump_json() + "\n"
        with self._lock:
            with open(self.file_path, "a", encoding="utf-8") as f:
                f.write(line)
