"""
Edge daemon package for the meter store-and-forward pipeline.

Polls Schneider power meters through a Modbus TCP gateway, decodes register
words into engineering values, persists every reading in a local SQLite
outbox, derives energy deltas and hourly totals, and forwards unsent
readings to the telemetry sink.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
