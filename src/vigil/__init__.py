"""
Vigil - Security Event Monitoring Pipeline

Ingests security-relevant events and:
- Scores them for threat likelihood and policy compliance
- Records every event in a tamper-evident audit trail
- Dispatches rate-limited, multi-channel alerts
- Samples system health and flags metric anomalies
"""

__version__ = "0.1.0"
