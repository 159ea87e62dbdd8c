"""
Pytest configuration and shared fixtures for Vigil tests.
"""

import os

os.environ.setdefault("AUDIT_ENCRYPTION_KEY", "test-master-key-for-audit-encryption-0001")
os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import pytest

from vigil.alerts.dispatcher import AlertDispatcher
from vigil.audit.trail import AuditTrail
from vigil.config import Settings
from vigil.detection.compliance import ComplianceScorer
from vigil.detection.threat import ThreatScorer
from vigil.main import build_pipeline
from vigil.pipeline.orchestrator import EventPipeline
from vigil.security.encryption import AuditEncryption
from vigil.store.cache import MemoryCache
from vigil.store.documents import MemoryDocumentStore

from helpers import FakeClock, RecordingChannel, StubSampler

TEST_MASTER_KEY = "test-master-key-for-audit-encryption-0001"
FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> MemoryCache:
    """In-process cache whose TTLs follow the fake clock."""
    return MemoryCache(clock=clock)


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def encryption() -> AuditEncryption:
    return AuditEncryption.from_master_key(TEST_MASTER_KEY)


@pytest.fixture
def test_settings() -> Settings:
    """Settings independent of the process environment."""
    return Settings(
        _env_file=None,
        environment="testing",
        audit_encryption_key=TEST_MASTER_KEY,
        ip_blacklist=["192.0.2.66"],
        geoip_networks={"203.0.113.0/24": {"country": "RU", "org": "Example VPN Hosting"}},
    )


@pytest.fixture
def threat_scorer(cache: MemoryCache) -> ThreatScorer:
    return ThreatScorer(cache)


@pytest.fixture
def compliance_scorer(cache: MemoryCache) -> ComplianceScorer:
    return ComplianceScorer(cache)


@pytest.fixture
def audit_trail(store: MemoryDocumentStore, encryption: AuditEncryption) -> AuditTrail:
    """Encrypted trail with a fixed clock so every entry lands on FIXED_NOW's day."""
    return AuditTrail(store, encryption=encryption, batch_size=100, clock=lambda: FIXED_NOW)


@pytest.fixture
def channels() -> dict[str, RecordingChannel]:
    return {name: RecordingChannel(name) for name in ("email", "webhook", "log", "audit")}


@pytest.fixture
def dispatcher(cache: MemoryCache, channels: dict[str, RecordingChannel]) -> AlertDispatcher:
    return AlertDispatcher(cache, channels, channel_timeout=1.0)


@pytest.fixture
def sampler() -> StubSampler:
    return StubSampler()


@pytest.fixture
def pipeline(
    test_settings: Settings,
    cache: MemoryCache,
    store: MemoryDocumentStore,
    channels: dict[str, RecordingChannel],
    sampler: StubSampler,
) -> EventPipeline:
    """Fully wired pipeline over in-memory stores."""
    return build_pipeline(test_settings, cache, store, channels=channels, sampler=sampler)


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Factory for raw event payloads."""

    def _make(
        data: Optional[Any] = None,
        event_type: str = "request",
        ip: Optional[str] = "198.51.100.10",
        user_agent: Optional[str] = (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        timestamp: str = "2026-03-02T12:00:00Z",
        **extra: Any,
    ) -> dict[str, Any]:
        source: dict[str, Any] = {}
        if ip is not None:
            source["ip"] = ip
        if user_agent is not None:
            source["userAgent"] = user_agent
        payload = {
            "timestamp": timestamp,
            "type": event_type,
            "source": source,
            "data": data if data is not None else {"endpoint": "/api/products", "method": "GET"},
        }
        payload.update(extra)
        return payload

    return _make
