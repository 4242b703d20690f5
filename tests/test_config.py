"""Tests for the configuration module."""

import pytest
from pydantic import ValidationError

from tabrelay.core.config import Settings
from tabrelay.models.messages import UpstreamConfigOverrides
from tabrelay.models.session import CaptureTarget, UpstreamConfig


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("PORT", "TRANSCRIPTION_MODE", "LANGUAGE_CODE", "STOP_GRACE_SEC"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.PORT == 7214
        assert settings.TRANSCRIPTION_MODE == "streaming"
        assert settings.AUDIO_ENCODING == "WEBM_OPUS"
        assert settings.SAMPLE_RATE_HERTZ == 48000
        assert settings.LANGUAGE_CODE == "en-US"
        assert settings.INTERIM_RESULTS is True
        assert settings.STOP_GRACE_SEC == 5.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TRANSCRIPTION_MODE", "chunked")
        monkeypatch.setenv("LANGUAGE_CODE", "pl-PL")
        monkeypatch.setenv("INTERIM_RESULTS", "false")

        settings = Settings(_env_file=None)

        assert settings.TRANSCRIPTION_MODE == "chunked"
        assert settings.LANGUAGE_CODE == "pl-PL"
        assert settings.INTERIM_RESULTS is False

    def test_rejects_unknown_mode(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, TRANSCRIPTION_MODE="batch")

    def test_grace_period_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, STOP_GRACE_SEC=0)


class TestSessionModels:
    def test_overrides_only_replace_given_fields(self):
        base = UpstreamConfig()

        merged = UpstreamConfigOverrides(sampleRate=16000, languageCode="de-DE").apply(base)

        assert merged.sample_rate_hertz == 16000
        assert merged.language_code == "de-DE"
        assert merged.encoding == "WEBM_OPUS"
        assert merged.interim_results is True

    def test_target_key_round_trip(self):
        target = CaptureTarget.parse_key("microphone:default")

        assert target.kind == "microphone"
        assert target.id == "default"
        assert target.key == "microphone:default"

    def test_bare_key_is_a_tab(self):
        assert CaptureTarget.parse_key("123").key == "tab:123"
