"""
TOSS Risk Engine Integration Tests

Tests covering:
- Five-stage pipeline: critical safety -> risk -> access -> state -> execution
- Slashing, manager bans and investor escalation
- Engine review, governance and breaker flows
- HTTP API
"""
