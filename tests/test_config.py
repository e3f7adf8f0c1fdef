"""
Tests for settings loading, validation and the command line front end.
"""
import asyncio
import signal

import pytest

from bottled_honey.cli import build_parser, main, request_shutdown
from bottled_honey.config import Settings, load_settings, parse_address, parse_headers
from bottled_honey.engine.listener import Listener
from bottled_honey.engine.password_gate import PasswordGate
from bottled_honey.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("ADDRESS", "PASSWORD_CHANCE", "OTEL_ENDPOINT", "OTEL_HEADERS", "REJECT_PASSWORD", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.password_chance == 0.0
        assert settings.reject_password is False
        assert settings.otel_endpoint is None
        assert settings.idle_timeout_sec == 3.0
        assert settings.password_timeout_sec == 30.0
        assert settings.max_frame_size == 5 * 1024

    def test_address_parts(self):
        settings = Settings(address="10.0.0.5:7777")

        assert settings.host == "10.0.0.5"
        assert settings.port == 7777

    def test_environment_is_read(self, monkeypatch):
        monkeypatch.setenv("ADDRESS", "127.0.0.1:9000")
        monkeypatch.setenv("PASSWORD_CHANCE", "0.5")
        monkeypatch.setenv("OTEL_HEADERS", "x-api-key=secret")

        settings = load_settings()

        assert settings.port == 9000
        assert settings.password_chance == 0.5
        assert settings.parsed_otel_headers() == {"x-api-key": "secret"}

    def test_overrides_beat_environment(self, monkeypatch):
        monkeypatch.setenv("PASSWORD_CHANCE", "0.5")

        assert load_settings(password_chance=0.25).password_chance == 0.25

    def test_none_overrides_fall_through(self, monkeypatch):
        monkeypatch.setenv("PASSWORD_CHANCE", "0.5")

        assert load_settings(password_chance=None).password_chance == 0.5

    @pytest.mark.parametrize("chance", [-0.1, 1.5])
    def test_password_chance_out_of_range(self, chance):
        with pytest.raises(ConfigurationError):
            load_settings(password_chance=chance)

    @pytest.mark.parametrize("address", ["7777", "localhost", "host:port", "1.2.3.4:70000", ":7777"])
    def test_bad_address(self, address):
        with pytest.raises(ConfigurationError):
            load_settings(address=address)

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"


class TestParsers:
    def test_parse_ipv6_address(self):
        assert parse_address("[::1]:7777") == ("::1", 7777)

    def test_parse_headers(self):
        assert parse_headers("a=1,b=2") == {"a": "1", "b": "2"}

    def test_parse_headers_skips_entries_without_equals(self):
        assert parse_headers("a=1,junk,b=2") == {"a": "1", "b": "2"}

    def test_parse_headers_value_may_contain_equals(self):
        assert parse_headers("authorization=Basic abc==") == {"authorization": "Basic abc=="}

    @pytest.mark.parametrize("raw", [None, ""])
    def test_parse_headers_empty(self, raw):
        assert parse_headers(raw) == {}


class TestCli:
    def test_parser_reads_flags(self):
        args = build_parser().parse_args(
            ["0.0.0.0:7777", "-p", "0.3", "--otel-endpoint", "http://collector:4318/v1/traces", "--reject-password"]
        )

        assert args.address == "0.0.0.0:7777"
        assert args.password_chance == 0.3
        assert args.otel_endpoint == "http://collector:4318/v1/traces"
        assert args.reject_password is True

    def test_unset_flags_are_none(self):
        args = build_parser().parse_args([])

        assert args.address is None
        assert args.password_chance is None
        assert args.reject_password is None

    def test_invalid_configuration_exits_nonzero(self, capsys):
        assert main(["127.0.0.1:7777", "-p", "2.0"]) == 1
        assert "Invalid configuration" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_shutdown_task_kept_until_done(self):
        class NullSink:
            def publish(self, event):
                return True

        listener = Listener(Settings(address="127.0.0.1:0"), PasswordGate(), NullSink())
        await listener.start()
        pending = set()

        task = request_shutdown(listener, signal.SIGTERM, pending)

        assert task in pending
        await asyncio.wait_for(task, timeout=2.0)
        assert not pending
        assert listener.server is not None and not listener.server.is_serving()
