"""Brain facade and its background maintenance."""

from kairu_brain.orchestrator.brain import Brain
from kairu_brain.orchestrator.maintenance import MaintenanceRunner
from kairu_brain.orchestrator.records import JsonlRecordSink, MemoryRecordSink, RecordSink

__all__ = ["Brain", "JsonlRecordSink", "MaintenanceRunner", "MemoryRecordSink", "RecordSink"]
