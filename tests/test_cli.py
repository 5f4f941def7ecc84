"""Tests for CLI interface."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from conftest import TERRAFORM, engine_report, failed_check
from iac_watch.cli import main
from iac_watch.errors import InstallationError
from iac_watch.models import Installation


class EngineSource:
    """Installation source handing out the fake engine."""

    method = "fake"

    def __init__(self, installation=None, error=None):
        self.installation = installation
        self.error = error

    async def install(self, version, install_dir):
        if self.error:
            raise InstallationError(self.error)
        return self.installation


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("IAC_WATCH_SETTINGS", "IAC_WATCH_TOKEN", "BC_API_KEY", "PRISMA_API_URL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path):
    """Create a settings file with a token."""
    path = tmp_path / "settings.yaml"
    path.write_text(f"token: secret-token\ninstall_dir: {tmp_path / 'install'}\n")
    return path


@pytest.fixture
def temp_terraform(tmp_path):
    """Create a temporary Terraform file."""
    tf_file = tmp_path / "main.tf"
    tf_file.write_text(TERRAFORM)
    return tf_file


@pytest.fixture
def engine(fake_engine):
    """Route installation to the fake engine."""
    with patch(
        "iac_watch.cli.default_installation_source",
        return_value=EngineSource(fake_engine.installation),
    ):
        yield fake_engine


class TestVersion:
    """Tests for version command."""

    def test_version_command(self, runner):
        result = runner.invoke(main, ["version"])
        assert result.exit_code == 0
        assert "iac-watch version" in result.output

    def test_version_option(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "iac-watch" in result.output


class TestConfig:
    """Tests for config command."""

    def test_token_is_redacted(self, runner, settings):
        """Test that the effective configuration never shows the token."""
        result = runner.invoke(main, ["--settings", str(settings), "config"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["auth_token"] == "****"
        assert "secret-token" not in result.output

    def test_invalid_settings_file(self, runner, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- not\n- a mapping\n")

        result = runner.invoke(main, ["--settings", str(path), "config"])

        assert result.exit_code == 2


class TestFixes:
    """Tests for fixes command."""

    def test_lists_rules(self, runner):
        result = runner.invoke(main, ["fixes"])

        assert result.exit_code == 0
        assert "CKV_AWS_20" in result.output.splitlines()


class TestInstall:
    """Tests for install command."""

    def test_install(self, runner, settings, engine):
        result = runner.invoke(main, ["--settings", str(settings), "install"])

        assert result.exit_code == 0
        assert "Checkov 3.2.1 is ready" in result.output

    def test_install_failure(self, runner, settings):
        with patch("iac_watch.cli.default_installation_source", return_value=EngineSource(error="offline")):
            result = runner.invoke(main, ["--settings", str(settings), "install"])

        assert result.exit_code == 1
        assert "offline" in result.output

    def test_invalid_version(self, runner, settings, engine):
        result = runner.invoke(main, ["--settings", str(settings), "install", "--engine-version", "1.0.0"])

        assert result.exit_code == 2


class TestAbout:
    """Tests for about command."""

    def test_not_installed(self, runner, settings):
        with patch("iac_watch.cli.detect_installation", AsyncMock(return_value=None)):
            result = runner.invoke(main, ["--settings", str(settings), "about"])

        assert result.exit_code == 1
        assert "has not been installed" in result.output

    def test_installed(self, runner, settings):
        installation = Installation(("/opt/checkov",), "3.2.1", "pip", "/opt/checkov")
        with patch("iac_watch.cli.detect_installation", AsyncMock(return_value=installation)):
            result = runner.invoke(main, ["--settings", str(settings), "about"])

        assert result.exit_code == 0
        assert "Checkov version: 3.2.1" in result.output
        assert "Installation method: pip" in result.output


class TestScan:
    """Tests for scan command."""

    def test_unsupported_file(self, runner, tmp_path):
        readme = tmp_path / "README.md"
        readme.write_text("# hello\n")

        result = runner.invoke(main, ["scan", str(readme)])

        assert result.exit_code == 2
        assert "Unsupported file type" in result.output

    def test_scan_passed(self, runner, settings, temp_terraform, engine):
        """Test scanning a file without findings."""
        result = runner.invoke(main, ["--settings", str(settings), "scan", str(temp_terraform)])

        assert result.exit_code == 0
        assert "No failed checks" in result.output
        assert engine.last_call["api_key"] == "secret-token"

    def test_scan_with_findings_json(self, runner, settings, temp_terraform, engine):
        """Test JSON output for a file with findings."""
        engine.configure(report=engine_report(failed_check("CKV_AWS_20", file_path=str(temp_terraform))))

        result = runner.invoke(
            main, ["--settings", str(settings), "scan", str(temp_terraform), "--format", "json"]
        )

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["passed"] is False
        assert [d["rule_id"] for d in data["diagnostics"]] == ["CKV_AWS_20"]
        assert "secret-token" not in result.output

    def test_scan_table(self, runner, settings, temp_terraform, engine):
        engine.configure(report=engine_report(failed_check("CKV_AWS_20")))

        result = runner.invoke(main, ["--settings", str(settings), "scan", str(temp_terraform)])

        assert result.exit_code == 1
        assert "CKV_AWS_20" in result.output
        assert "Found 1 failed check(s)" in result.output

    def test_scan_fix(self, runner, settings, temp_terraform, engine):
        """Test applying quick fixes to the scanned file."""
        engine.configure(report=engine_report(failed_check("CKV_AWS_20")))

        result = runner.invoke(
            main, ["--settings", str(settings), "scan", str(temp_terraform), "--fix"]
        )

        assert result.exit_code == 1
        assert "Applied 1 fix(es)" in result.output
        content = temp_terraform.read_text()
        assert 'acl = "private"' in content
        assert "public-read" not in content

    def test_missing_token(self, runner, tmp_path, temp_terraform, engine):
        """Test that a missing token fails the scan."""
        path = tmp_path / "settings.yaml"
        path.write_text(f"install_dir: {tmp_path / 'install'}\n")

        result = runner.invoke(main, ["--settings", str(path), "scan", str(temp_terraform)])

        assert result.exit_code == 2
        assert "API token was not found" in result.output
        assert engine.last_call is None

    def test_engine_failure(self, runner, settings, temp_terraform, engine):
        engine.configure(exit_code=2, stderr="boom")

        result = runner.invoke(main, ["--settings", str(settings), "scan", str(temp_terraform)])

        assert result.exit_code == 2
        assert "Error occurred while running a Checkov scan" in result.output

    def test_engine_failure_with_error_popups_disabled(self, runner, tmp_path, temp_terraform, engine):
        """Test that suppressed error popups still fail the scan."""
        path = tmp_path / "settings.yaml"
        path.write_text(
            f"token: secret-token\ndisableErrorMessage: true\ninstall_dir: {tmp_path / 'install'}\n"
        )
        engine.configure(exit_code=2, stderr="boom")

        result = runner.invoke(main, ["--settings", str(path), "scan", str(temp_terraform)])

        assert result.exit_code == 2
        assert "Checkov scan failed" in result.output
        assert "No failed checks" not in result.output
