"""
Meter Collector Services

- Device Service - channel, executor, poller, snapshot store
- API Service - HTTP facade over the snapshot store
"""
