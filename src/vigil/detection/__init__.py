"""
Threat and compliance scoring.
"""

from vigil.detection.compliance import ComplianceScorer
from vigil.detection.geo import GeoInfo, GeoLookup, StaticGeoLookup
from vigil.detection.rules import load_principles, load_threat_rules
from vigil.detection.threat import ThreatScorer

__all__ = [
    "ComplianceScorer",
    "GeoInfo",
    "GeoLookup",
    "StaticGeoLookup",
    "ThreatScorer",
    "load_principles",
    "load_threat_rules",
]
