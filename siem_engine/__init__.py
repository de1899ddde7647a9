"""
Security event correlation and detection engine.

Turns a growing stream of normalized log events into deduplicated,
escalating security alerts.

Packages:
    models: LogEvent, Alert, AlertCandidate and cycle results
    interfaces: EventRepository and NotificationDispatcher contracts
    config: YAML configuration loading and validation
    stats: Window math, sliding-window tracker, volume baseline
    detection: Single-signal rules, materializer, escalation monitor
    correlation: Cross-signal correlation rules and engine
    storage: In-memory and Redis adapters
    services: Logging setup and the asyncio service runner
"""

__version__ = "0.1.0"
