import pytest
import typer
from typer.testing import CliRunner
from cli import main as cli_main
from mitigation.core.errors import StorageUnavailable, ValidationError
from conftest import make_engine, make_settings

runner = CliRunner()


@pytest.fixture
def engine(monkeypatch, clock):
    engine = make_engine(clock=clock)
    monkeypatch.setattr(cli_main, "build_engine", lambda: engine)
    return engine


def test_add_and_status(engine):
    result = runner.invoke(cli_main.app, ["add", "198.51.100.4", "--type", "blacklist", "--reason", "abuse"])
    assert result.exit_code == 0
    assert "blacklist" in result.output

    result = runner.invoke(cli_main.app, ["status", "198.51.100.4"])
    assert result.exit_code == 0
    assert "BLOCKED" in result.output


def test_invalid_ip_exits_with_validation_code(engine):
    result = runner.invoke(cli_main.app, ["add", "300.1.1.1", "--type", "blacklist"])
    assert result.exit_code == cli_main.EXIT_INVALID


def test_temporary_without_ttl_is_rejected(engine):
    result = runner.invoke(cli_main.app, ["add", "198.51.100.4", "--type", "temporary"])
    assert result.exit_code == cli_main.EXIT_INVALID


def test_remove_missing_entry_fails(engine):
    result = runner.invoke(cli_main.app, ["remove", "198.51.100.4", "--type", "whitelist"])
    assert result.exit_code == cli_main.EXIT_INVALID


def test_list_shows_active_entries(engine):
    engine.add_ip_to_list("198.51.100.4", "temporary", "scraping", 600)
    result = runner.invoke(cli_main.app, ["list", "--type", "temporary"])
    assert result.exit_code == 0
    assert "198.51.100.4" in result.output


def test_check_reports_denial(engine):
    engine.add_ip_to_list("198.51.100.4", "blacklist")
    result = runner.invoke(cli_main.app, ["check", "198.51.100.4"])
    assert result.exit_code == 0
    assert "DENIED" in result.output
    assert "blacklisted" in result.output


def test_cleanup_reports_count(engine, clock):
    engine.add_ip_to_list("198.51.100.4", "temporary", ttl_seconds=30)
    clock.advance(31)
    result = runner.invoke(cli_main.app, ["cleanup"])
    assert result.exit_code == 0
    assert "Removed 1 expired entry" in result.output


def test_unreachable_store_exits_with_storage_code(monkeypatch, clock):
    settings = make_settings(database_url="sqlite:////nonexistent-directory/mitigation.db")
    from mitigation.engine import MitigationEngine

    monkeypatch.setattr(cli_main, "build_engine", lambda: MitigationEngine(settings, clock=clock))
    result = runner.invoke(cli_main.app, ["list"])
    assert result.exit_code == cli_main.EXIT_STORAGE


def test_handle_errors_maps_engine_errors_to_exit_codes():
    with pytest.raises(typer.Exit) as invalid:
        with cli_main.handle_errors():
            raise ValidationError("bad ip")
    assert invalid.value.exit_code == cli_main.EXIT_INVALID

    with pytest.raises(typer.Exit) as storage:
        with cli_main.handle_errors():
            raise StorageUnavailable("down")
    assert storage.value.exit_code == cli_main.EXIT_STORAGE
