"""End-to-end tests for the build pipeline.

make and git are emulated through a patched subprocess.run; HTTP is mocked.
"""

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx

from kbuild.config import Settings
from kbuild.notify import TELEGRAM_API_BASE
from kbuild.pipeline import PipelineError, PipelineReport, run_pipeline
from kbuild.runner import BuildExecutionError
from kbuild.types import NotifyStatus, PipelineState

BUILD_TIME = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


class FakeTools:
    """Stand-in for make and git invoked through subprocess.run."""

    def __init__(self, config, produce_image=True):
        self.config = config
        self.produce_image = produce_image
        self.commands: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(list(cmd))
        if cmd[:2] == ["git", "rev-parse"]:
            return MagicMock(returncode=0, stdout="abc1234\n", stderr="")
        if cmd[:2] == ["git", "clone"]:
            dest = Path(cmd[-1])
            dest.mkdir(parents=True)
            (dest / "anykernel.sh").write_text("#!/sbin/sh\n")
            (dest / "README.md").write_text("readme\n")
            return MagicMock(returncode=0, stdout="", stderr="")
        if "Image.gz-dtb" in cmd and self.produce_image:
            self.config.image_path.parent.mkdir(parents=True, exist_ok=True)
            self.config.image_path.write_bytes(b"kernel" * 256)
        return MagicMock(returncode=0, stdout="", stderr="")

    @property
    def cloned(self) -> bool:
        return any(c[:2] == ["git", "clone"] for c in self.commands)


def ticking_clock(*values):
    ticks = iter(values)
    return lambda: next(ticks)


@pytest.fixture
def toolchain_ready(build_config):
    build_config.tc_dir.mkdir()
    return build_config


class TestRunPipeline:
    """Tests for run_pipeline function."""

    def test_end_to_end_success(self, toolchain_ready):
        """Should compile, package and report without credentials."""
        config = toolchain_ready
        tools = FakeTools(config)
        client = MagicMock(spec=httpx.Client)
        states: list[PipelineState] = []

        with patch("subprocess.run", side_effect=tools):
            report = run_pipeline(
                config,
                Settings(),
                client,
                clock=ticking_clock(0.0, 150.0, 185.0),
                now=lambda: BUILD_TIME,
                on_state=states.append,
            )

        assert isinstance(report, PipelineReport)
        assert report.state is PipelineState.DONE
        assert report.package.zip_name == "rsuntk_DEVICEX-20240506-0708-abc1234.zip"
        assert report.package.zip_path.is_file()
        assert report.package.md5 == hashlib.md5(
            report.package.zip_path.read_bytes()
        ).hexdigest()
        assert report.package.elapsed_minutes == 2
        assert report.elapsed_minutes == 3
        assert report.notify_status is NotifyStatus.SKIPPED
        client.post.assert_not_called()
        assert states == [
            PipelineState.CONFIGURING,
            PipelineState.BUILDING,
            PipelineState.PACKAGING,
            PipelineState.NOTIFYING,
            PipelineState.DONE,
        ]

    def test_missing_image_aborts_before_packaging(self, toolchain_ready):
        """No image means no checkout, no zip and a failed state."""
        config = toolchain_ready
        tools = FakeTools(config, produce_image=False)
        states: list[PipelineState] = []

        with (
            patch("subprocess.run", side_effect=tools),
            pytest.raises(BuildExecutionError) as exc_info,
        ):
            run_pipeline(
                config,
                Settings(),
                MagicMock(spec=httpx.Client),
                on_state=states.append,
            )

        assert "Compilation failed!" in str(exc_info.value)
        assert states[-1] is PipelineState.FAILED
        assert not tools.cloned
        assert list(config.source_dir.glob("*.zip")) == []

    def test_missing_toolchain(self, build_config):
        """Should stop before invoking make without a toolchain."""
        with (
            patch("subprocess.run") as mock_run,
            pytest.raises(PipelineError) as exc_info,
        ):
            run_pipeline(build_config, Settings(), MagicMock(spec=httpx.Client))

        assert exc_info.value.code == "toolchain_missing"
        mock_run.assert_not_called()

    def test_thermal_workaround_applied(self, toolchain_ready):
        """Should patch the defconfig before building when opted in."""
        config = toolchain_ready
        config.defconfig_path.parent.mkdir(parents=True)
        config.defconfig_path.write_text("CONFIG_QTI_ADC_TM=y\n")

        with patch("subprocess.run", side_effect=FakeTools(config)):
            run_pipeline(
                config,
                Settings(apply_workaround=True),
                MagicMock(spec=httpx.Client),
                now=lambda: BUILD_TIME,
            )

        assert config.defconfig_path.read_text() == "# CONFIG_QTI_ADC_TM is not set\n"

    def test_upload_failure_is_not_fatal(self, toolchain_ready):
        """A failed upload is reported but the build still succeeds."""
        config = toolchain_ready
        settings = Settings(tg_token="123:abc", tg_chat_id="42")

        with (
            respx.mock,
            patch("subprocess.run", side_effect=FakeTools(config)),
        ):
            respx.post(f"{TELEGRAM_API_BASE}/bot123:abc/sendDocument").mock(
                return_value=httpx.Response(500)
            )
            with httpx.Client() as client:
                report = run_pipeline(config, settings, client, now=lambda: BUILD_TIME)

        assert report.state is PipelineState.DONE
        assert report.notify_status is NotifyStatus.FAILED
        assert report.notify_error is not None
        assert report.package.zip_path.is_file()

    def test_upload_sent(self, toolchain_ready):
        """Should upload when credentials are configured."""
        config = toolchain_ready
        settings = Settings(tg_token="123:abc", tg_chat_id="42")

        with (
            respx.mock,
            patch("subprocess.run", side_effect=FakeTools(config)),
        ):
            route = respx.post(f"{TELEGRAM_API_BASE}/bot123:abc/sendDocument").mock(
                return_value=httpx.Response(200, json={"ok": True, "result": {}})
            )
            with httpx.Client() as client:
                report = run_pipeline(config, settings, client, now=lambda: BUILD_TIME)

        assert report.notify_status is NotifyStatus.SENT
        assert route.call_count == 1

    def test_post_build_cleanup(self, toolchain_ready):
        """Should remove the checkout and boot outputs when opted in."""
        config = toolchain_ready

        with patch("subprocess.run", side_effect=FakeTools(config)):
            report = run_pipeline(
                config,
                Settings(do_clean=True),
                MagicMock(spec=httpx.Client),
                now=lambda: BUILD_TIME,
            )

        assert report.package.zip_path.is_file()
        assert not config.anykernel_dir.exists()
        assert not config.image_path.parent.exists()
