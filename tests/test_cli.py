"""Tests for CLI interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import FakeCommands
from dotfiles_installer import main as cli
from dotfiles_installer.interaction import InstallationAborted
from dotfiles_installer.orchestrator import PackageRecord, PackageStatus, RunSummary

APT_MACHINE = {
    "outputs": {
        ("dpkg-query",): "git\n",
        ("apt-cache", "pkgnames"): "git\nripgrep\nfd-find\nbuild-essential\npkg-config\n",
    },
    "available": {"apt-get", "dpkg-query", "apt-cache"},
}


@pytest.fixture
def apt_commands(patch_commands):
    return patch_commands(FakeCommands(**APT_MACHINE))


def install_args(manifest_dir: Path, *extra: str) -> list[str]:
    return ["--manifest-dir", str(manifest_dir), "--platform", "debian", "--non-interactive", *extra]


class TestMainCLI:
    """Tests for the main command-line interface."""

    def test_help_output(self):
        """Test that --help works."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["--help"])
        assert result.exit_code == 0
        assert "YAML manifest" in result.output
        assert "--verbose" in result.output

    def test_shows_subcommands(self):
        """Test that subcommands are shown in help."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["--help"])
        for command in ("install", "retry", "profiles", "validate"):
            assert command in result.output

    def test_no_subcommand_shows_help(self):
        """Test that invoking without subcommand shows help."""
        runner = CliRunner()
        result = runner.invoke(cli.main, [])
        assert result.exit_code == 0
        assert "install" in result.output

    def test_install_options_documented(self):
        """Test that all install options appear in help."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["install", "--help"])
        for option in ("--dry-run", "--manifest-dir", "--non-interactive", "--platform", "--log-dir"):
            assert option in result.output, f"{option} not in help"


class TestInstallCommand:
    """Tests for the install subcommand."""

    def test_dry_run(self, apt_commands, manifest_dir: Path, tmp_path: Path):
        """Test that a dry run plans the profile and exits 0."""
        runner = CliRunner()
        result = runner.invoke(
            cli.main, ["install", "dev", *install_args(manifest_dir, "--dry-run", "--log-dir", str(tmp_path / "logs"))]
        )

        assert result.exit_code == 0, result.output
        assert "[DRY RUN] Installation Summary for profile 'dev'" in result.output
        assert apt_commands.count("apt-get") == 0
        assert not (tmp_path / "logs").exists()

    def test_install(self, apt_commands, manifest_dir: Path, tmp_path: Path):
        """Test a real run against the fake machine."""
        runner = CliRunner()
        result = runner.invoke(
            cli.main, ["install", "minimal", *install_args(manifest_dir, "--log-dir", str(tmp_path / "logs"))]
        )

        assert result.exit_code == 0, result.output
        assert apt_commands.matching("apt-get", "install") == [["apt-get", "install", "-y", "-qq", "ripgrep"]]
        assert "Installation Summary for profile 'minimal'" in result.output

    def test_failed_install_exits_1(self, patch_commands, manifest_dir: Path, tmp_path: Path):
        """Test that package failures give exit code 1 and an error log."""
        patch_commands(FakeCommands(**APT_MACHINE, failures=[("apt-get", "install")]))
        runner = CliRunner()
        result = runner.invoke(
            cli.main, ["install", "minimal", *install_args(manifest_dir, "--log-dir", str(tmp_path / "logs"))]
        )

        assert result.exit_code == 1
        assert "Failed packages:" in result.output
        logs = list((tmp_path / "logs").glob("install-*.log"))
        assert len(logs) == 1
        assert "Dotfiles Installation Log" in logs[0].read_text()

    def test_unknown_profile_exits_2(self, apt_commands, manifest_dir: Path):
        """Test that an unknown profile is a usage error."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["install", "server", *install_args(manifest_dir, "--dry-run")])

        assert result.exit_code == 2
        assert "Unknown profile: server" in result.output
        assert apt_commands.calls == []

    def test_invalid_manifest_exits_2(self, apt_commands, tmp_path: Path):
        """Test that manifest errors stop the run before any command."""
        (tmp_path / "packages.yaml").write_text("profiles: [unclosed\n")
        runner = CliRunner()
        result = runner.invoke(cli.main, ["install", "dev", *install_args(tmp_path, "--dry-run")])

        assert result.exit_code == 2
        assert "Error: Invalid YAML" in result.output
        assert apt_commands.calls == []

    def test_abort_exits_130(self, monkeypatch, manifest_dir: Path):
        """Test that quitting at a prompt exits 130."""

        def aborted(*args, **kwargs):
            raise InstallationAborted("Installation cancelled by user")

        monkeypatch.setattr(cli, "install_profile", aborted)
        runner = CliRunner()
        result = runner.invoke(cli.main, ["install", "dev", *install_args(manifest_dir, "--dry-run")])

        assert result.exit_code == 130
        assert "Installation cancelled by user" in result.output

    def test_exit_code_from_summary(self, monkeypatch, manifest_dir: Path):
        """Test that the summary decides the exit code."""
        summary = RunSummary(
            profile="dev",
            dry_run=True,
            records=[PackageRecord("git", PackageStatus.FAILED, reason="boom")],
        )
        monkeypatch.setattr(cli, "install_profile", lambda *args, **kwargs: summary)
        runner = CliRunner()
        result = runner.invoke(cli.main, ["install", "dev", *install_args(manifest_dir, "--dry-run")])

        assert result.exit_code == 1
        assert "git: boom" in result.output

    def test_manifest_dir_from_environment(self, apt_commands, manifest_dir: Path):
        """Test that DOTFILES_MANIFEST_DIR selects the manifest."""
        runner = CliRunner()
        result = runner.invoke(
            cli.main,
            ["install", "minimal", "--dry-run", "--non-interactive"],
            env={"DOTFILES_MANIFEST_DIR": str(manifest_dir), "DOTFILES_PLATFORM": "debian"},
        )
        assert result.exit_code == 0, result.output
        assert "profile 'minimal'" in result.output


class TestRetryCommand:
    """Tests for the retry subcommand."""

    def test_retry_from_log(self, apt_commands, manifest_dir: Path, tmp_path: Path):
        """Test that logged packages are installed again."""
        log = tmp_path / "missing-packages-20260101_120000.json"
        log.write_text(json.dumps({"packages": [{"backend": "apt", "package": "fd", "actual_name": "fd-find"}]}))
        runner = CliRunner()
        result = runner.invoke(
            cli.main, ["retry", str(log), *install_args(manifest_dir, "--log-dir", str(tmp_path / "logs"))]
        )

        assert result.exit_code == 0, result.output
        assert apt_commands.matching("apt-get", "install") == [["apt-get", "install", "-y", "-qq", "fd-find"]]

    def test_missing_log_exits_2(self, manifest_dir: Path, tmp_path: Path):
        """Test that a missing retry log is a usage error."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["retry", str(tmp_path / "nope.json"), *install_args(manifest_dir)])

        assert result.exit_code == 2
        assert "Log file not found" in result.output

    def test_empty_log(self, manifest_dir: Path, tmp_path: Path):
        """Test that an empty log has nothing to do."""
        log = tmp_path / "log.json"
        log.write_text(json.dumps({"packages": []}))
        runner = CliRunner()
        result = runner.invoke(cli.main, ["retry", str(log), *install_args(manifest_dir, "--dry-run")])

        assert result.exit_code == 0
        assert "No packages to retry" in result.output


class TestInspectionCommands:
    """Tests for profiles and validate."""

    def test_profiles(self, manifest_dir: Path):
        """Test that profiles are listed with package counts."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["profiles", "--manifest-dir", str(manifest_dir), "--platform", "debian"])

        assert result.exit_code == 0
        assert "minimal (2 packages) - Just the basics" in result.output
        assert "dev (4 packages)" in result.output

    def test_validate(self, manifest_dir: Path):
        """Test that a valid manifest is reported OK."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["validate", "--manifest-dir", str(manifest_dir), "--platform", "debian"])

        assert result.exit_code == 0
        assert "Manifest OK (debian)" in result.output
        assert "4 profiles, 4 categories, 6 packages" in result.output

    def test_validate_reports_schema_errors(self, tmp_path: Path):
        """Test that schema problems exit 2."""
        (tmp_path / "packages.yaml").write_text("version: '1'\npackages:\n  git:\n    category: missing\n")
        runner = CliRunner()
        result = runner.invoke(cli.main, ["validate", "--manifest-dir", str(tmp_path), "--platform", "debian"])

        assert result.exit_code == 2
        assert "packages.git.category" in result.output

    @pytest.mark.parametrize("platform", ["ubuntu", "debian", "macos"])
    def test_validate_bundled(self, platform: str):
        """Test that the shipped manifests validate."""
        runner = CliRunner()
        result = runner.invoke(cli.main, ["validate", "--platform", platform])
        assert result.exit_code == 0, result.output
