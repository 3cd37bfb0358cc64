from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from research_orchestrator.config import LimitSettings, ProviderSettings, Settings
from research_orchestrator.orchestrator.models import MODE_PROFILES, ResearchMode

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in ("RESEARCH_ORCH_DB_PATH", "RESEARCH_ORCH_ENABLED", "RESEARCH_ORCH_PROVIDER"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".research_orchestrator.db")
    assert settings.scheduler.enabled_on_start is False
    assert settings.limits.max_concurrent_jobs == 3
    assert settings.limits.max_daily_cost_usd == 50.0
    assert settings.provider.kind == "http"
    assert settings.scheduler.intervals == {
        mode: profile.default_interval for mode, profile in MODE_PROFILES.items()
    }
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RESEARCH_ORCH_MAX_CONCURRENT_JOBS", "5")
    monkeypatch.setenv("RESEARCH_ORCH_MAX_DAILY_COST_USD", "12.5")
    monkeypatch.setenv("RESEARCH_ORCH_ENABLED", "yes")
    monkeypatch.setenv("RESEARCH_ORCH_PROVIDER", " Echo ")
    monkeypatch.setenv("RESEARCH_ORCH_DEEP_REASONING_INTERVAL_MINUTES", "90")
    monkeypatch.setenv("RESEARCH_ORCH_DEDUP_TTL_HOURS", "6")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.limits.max_concurrent_jobs == 5
    assert settings.limits.max_daily_cost_usd == 12.5
    assert settings.scheduler.enabled_on_start is True
    assert settings.provider.kind == "echo"
    assert settings.scheduler.intervals[ResearchMode.DEEP_REASONING] == timedelta(minutes=90)
    assert settings.dedup.ttl == timedelta(hours=6)


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RESEARCH_ORCH_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for RESEARCH_ORCH_ENABLED"):
        Settings.from_env()


def test_invalid_interval_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RESEARCH_ORCH_SENTIMENT_BURST_INTERVAL_MINUTES", "soon")

    with pytest.raises(ValueError, match="SENTIMENT_BURST_INTERVAL_MINUTES"):
        Settings.from_env()


def test_validate_rejects_zero_concurrency() -> None:
    settings = Settings(limits=LimitSettings(max_concurrent_jobs=0))

    with pytest.raises(ValueError, match="MAX_CONCURRENT_JOBS"):
        settings.validate()


def test_validate_rejects_unknown_provider_kind() -> None:
    settings = Settings(provider=ProviderSettings(kind="grpc"))

    with pytest.raises(ValueError, match="RESEARCH_ORCH_PROVIDER must be one of"):
        settings.validate()


def test_validate_rejects_non_positive_interval() -> None:
    settings = Settings()
    settings = replace(
        settings,
        scheduler=replace(
            settings.scheduler,
            intervals={**settings.scheduler.intervals, ResearchMode.SENTIMENT_BURST: timedelta(0)},
        ),
    )

    with pytest.raises(ValueError, match="Interval for sentiment_burst"):
        settings.validate()


def test_api_key_is_read_from_configured_env(monkeypatch) -> None:
    monkeypatch.setenv("MY_KEY", "secret")
    monkeypatch.delenv("MISSING_KEY_FOR_TEST", raising=False)

    assert ProviderSettings(api_key_env="MY_KEY").api_key == "secret"
    assert ProviderSettings(api_key_env="MISSING_KEY_FOR_TEST").api_key is None
