"""Unit tests for FFmpeg runner with process isolation and timeout enforcement."""

import json
import os
import subprocess
import tempfile
from unittest.mock import MagicMock, patch

import pytest

from video_transcode.errors import ProbeError
from video_transcode.ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegResult,
    FfmpegRunner,
    _double_bitrate,
    check_ffmpeg,
)
from video_transcode.models import RunnerConfig


def _capture_commands(runner):
    captured_cmd = []

    def mock_run_ffmpeg(cmd, expected_duration=None):
        captured_cmd.append(cmd)
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0)

    runner._run_ffmpeg = mock_run_ffmpeg
    return captured_cmd


class TestProgressParsing:
    """Test FFmpeg progress parsing from stderr."""

    def test_parse_out_time(self):
        """Test parsing out_time from FFmpeg progress output."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        mock_stderr = ["frame=  123\n", "fps=25.00\n", "out_time=00:00:05.50\n", "speed=2.5x\n"]

        runner._monitor_progress(iter(mock_stderr))

        assert runner._progress.current_time_s == pytest.approx(5.5, rel=0.01)
        assert runner._progress.frame == 123
        assert runner._progress.fps == pytest.approx(25.0, rel=0.01)
        assert runner._progress.speed == pytest.approx(2.5, rel=0.01)
        assert runner._progress.last_update > 0

    def test_parse_large_time(self):
        """Test parsing large time values (hours)."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=01:23:45.67\n"]))

        expected_time = 1 * 3600 + 23 * 60 + 45.67
        assert runner._progress.current_time_s == pytest.approx(expected_time, rel=0.01)

    def test_stderr_tail_kept(self):
        """Recent stderr lines are kept for error reporting."""
        runner = FfmpegRunner()
        runner._monitor_progress(iter(["line one\n", "Conversion failed!\n"]))

        assert "".join(runner._stderr_tail).endswith("Conversion failed!\n")

    def test_progress_callback_invoked(self):
        """Test that progress callback is invoked."""
        callback_invoked = []

        def progress_callback(progress: FfmpegProgress):
            callback_invoked.append(progress.current_time_s)

        runner = FfmpegRunner(progress_callback=progress_callback)
        runner._monitor_progress(iter(["out_time=00:00:01.00\n"]))

        assert callback_invoked == [pytest.approx(1.0)]

    def test_percent(self):
        progress = FfmpegProgress(current_time_s=30.0, total_duration_s=120.0)
        assert progress.percent == pytest.approx(25.0)
        assert FfmpegProgress(current_time_s=5.0).percent == 0.0


class TestErrorClassification:
    """Test FFmpeg error classification for retry logic."""

    def test_classify_permanent_errors(self):
        """Test that permanent errors are classified correctly."""
        runner = FfmpegRunner()

        permanent_cases = [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "Permission denied",
            "Unsupported codec for output stream",
            "moov atom not found",
        ]

        for stderr in permanent_cases:
            error_type = runner._classify_error(stderr)
            assert error_type == FfmpegErrorType.PERMANENT, f"Expected PERMANENT for: {stderr}"

    def test_classify_unknown_as_transient(self):
        """Test that unknown errors default to transient."""
        runner = FfmpegRunner()

        for stderr in ["Connection refused", "Resource temporarily unavailable", "Disk full"]:
            assert runner._classify_error(stderr) == FfmpegErrorType.TRANSIENT

    def test_error_summary(self):
        timed_out = FfmpegResult(
            success=False, returncode=-1, stderr="", duration_s=121.0, timeout_type="no_progress"
        )
        assert "no_progress timeout" in timed_out.error_summary()

        failed = FfmpegResult(success=False, returncode=1, stderr="x" * 900, duration_s=1.0)
        assert failed.error_summary().startswith("ffmpeg exited with 1")
        assert len(failed.error_summary(limit=100)) < 150


class TestCommandGeneration:
    """Test FFmpeg command generation."""

    def test_transcode_command(self):
        """Rendition encode uses CRF with the ladder bitrate as VBV cap."""
        runner = FfmpegRunner(ffmpeg_exe="ffmpeg")
        captured_cmd = _capture_commands(runner)

        runner.transcode(
            "input.mp4",
            "720p.mp4",
            codec="libx264",
            bitrate="2500k",
            video_filter="scale=w=1280:h=720",
        )

        cmd = captured_cmd[0]
        assert cmd[:4] == ["ffmpeg", "-y", "-i", "input.mp4"]
        assert cmd[cmd.index("-vf") + 1] == "scale=w=1280:h=720"
        assert cmd[cmd.index("-crf") + 1] == "23"
        assert cmd[cmd.index("-maxrate") + 1] == "2500k"
        assert cmd[cmd.index("-bufsize") + 1] == "5000k"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"
        assert cmd[cmd.index("-progress") + 1] == "pipe:2"
        assert cmd[-1] == "720p.mp4"

    def test_transcode_uncapped_when_bitrate_unknown(self):
        """A '0' bitrate (unknown source bitrate) means pure CRF."""
        runner = FfmpegRunner(ffmpeg_exe="ffmpeg")
        captured_cmd = _capture_commands(runner)

        runner.transcode("input.mp4", "original.mp4", bitrate="0")

        assert "-maxrate" not in captured_cmd[0]
        assert "-bufsize" not in captured_cmd[0]

    def test_transcode_filter_complex_with_overlay_input(self):
        """Image watermarks add a second input and map the graph output."""
        runner = FfmpegRunner(ffmpeg_exe="ffmpeg")
        captured_cmd = _capture_commands(runner)

        runner.transcode(
            "input.mp4",
            "360p.mp4",
            bitrate="800k",
            video_filter="[0:v]scale=w=640:h=360[base];[base][1:v]overlay=10:10[v]",
            filter_complex=True,
            extra_inputs=["logo.png"],
        )

        cmd = captured_cmd[0]
        assert cmd[:6] == ["ffmpeg", "-y", "-i", "input.mp4", "-i", "logo.png"]
        assert "-filter_complex" in cmd
        assert "-vf" not in cmd
        assert cmd[cmd.index("-filter_complex") + 2:cmd.index("-filter_complex") + 6] == [
            "-map", "[v]", "-map", "0:a?",
        ]

    def test_extract_frame_command(self):
        """Thumbnails seek before the input and write one frame."""
        runner = FfmpegRunner(ffmpeg_exe="ffmpeg")
        captured_cmd = _capture_commands(runner)

        runner.extract_frame("input.mp4", "thumb_0.jpg", 12.5, video_filter="scale=320:180", quality=3)

        cmd = captured_cmd[0]
        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "12.500"
        assert cmd[cmd.index("-frames:v") + 1] == "1"
        assert cmd[cmd.index("-q:v") + 1] == "3"
        assert cmd[-1] == "thumb_0.jpg"

    def test_double_bitrate(self):
        assert _double_bitrate("2500k") == "5000k"
        assert _double_bitrate("1.5M") == "3M"
        assert _double_bitrate("4500000") == "9000000"
        assert _double_bitrate("weird") == "weird"


class TestProbe:
    """Test ffprobe invocation."""

    @patch("subprocess.run")
    def test_probe_parses_json(self, mock_run):
        payload = {"streams": [{"codec_type": "video"}], "format": {"duration": "3.0"}}
        mock_run.return_value = MagicMock(stdout=json.dumps(payload))

        runner = FfmpegRunner(ffprobe_exe="ffprobe")
        assert runner.probe("input.mp4") == payload

        cmd = mock_run.call_args[0][0]
        assert cmd[0] == "ffprobe"
        assert "-show_streams" in cmd
        assert mock_run.call_args[1]["timeout"] == 30

    @patch("subprocess.run")
    def test_probe_failure_raises(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, "ffprobe", stderr="Invalid data")

        runner = FfmpegRunner(ffprobe_exe="ffprobe")
        with pytest.raises(ProbeError, match="Invalid data"):
            runner.probe("broken.mp4")

    @patch("subprocess.run")
    def test_probe_timeout_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("ffprobe", 30)

        runner = FfmpegRunner(ffprobe_exe="ffprobe")
        with pytest.raises(ProbeError, match="timed out"):
            runner.probe("slow.mp4")

    @patch("subprocess.run")
    def test_probe_bad_json_raises(self, mock_run):
        mock_run.return_value = MagicMock(stdout="not json")

        runner = FfmpegRunner(ffprobe_exe="ffprobe")
        with pytest.raises(ProbeError):
            runner.probe("input.mp4")


class TestArtifactGeneration:
    """Test failure artifact generation."""

    def test_save_failure_artifacts(self):
        """Test that failure artifacts are saved correctly."""
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(temp_dir=tmpdir, save_artifacts_on_failure=True)

            cmd = ["ffmpeg", "-i", "input.mp4", "output.mp4"]
            stderr = "Error: File not found"

            artifacts = runner._save_failure_artifacts(cmd, stderr)

            assert len(artifacts) == 2

            log_file = [a for a in artifacts if a.name.startswith("ffmpeg_error_")][0]
            log_content = log_file.read_text()
            assert "COMMAND:" in log_content
            assert "STDERR:" in log_content
            assert "Error: File not found" in log_content

            script_file = [a for a in artifacts if a.name.startswith("ffmpeg_cmd_")][0]
            assert os.access(script_file, os.X_OK)
            assert "#!/bin/bash" in script_file.read_text()


class TestTempDirectory:
    """Test temp directory handling."""

    def test_temp_dir_from_config(self):
        """Test using temp_dir from config."""
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(temp_dir=tmpdir)
            assert str(runner._get_temp_dir()) == tmpdir

    def test_temp_dir_default_is_system_temp(self):
        runner = FfmpegRunner(temp_dir=None)
        assert str(runner._get_temp_dir()) == tempfile.gettempdir()


class TestProcessTreeCleanup:
    """Test process tree cleanup logic."""

    def test_kill_process_tree_with_psutil(self):
        """Every process in the tree receives SIGTERM."""
        runner = FfmpegRunner()

        mock_process = MagicMock()
        mock_process.pid = 12345
        runner._process = mock_process

        mock_parent = MagicMock()
        mock_child1 = MagicMock()
        mock_child2 = MagicMock()

        with patch("psutil.Process") as mock_process_class:
            mock_process_class.return_value = mock_parent
            mock_parent.children.return_value = [mock_child1, mock_child2]

            with patch("psutil.wait_procs") as mock_wait:
                mock_wait.return_value = ([mock_parent, mock_child1], [mock_child2])

                runner._kill_process_tree()

                mock_parent.terminate.assert_called_once()
                mock_child1.terminate.assert_called_once()
                mock_child2.terminate.assert_called_once()
                mock_child2.kill.assert_called_once()
                mock_parent.kill.assert_not_called()

    def test_kill_without_process_is_noop(self):
        runner = FfmpegRunner()
        with patch("psutil.Process") as mock_process_class:
            runner._kill_process_tree()
            mock_process_class.assert_not_called()


class TestConfigValidation:
    """Test configuration validation with Pydantic models."""

    def test_runner_config_defaults(self):
        config = RunnerConfig()

        assert config.global_timeout_s == 1800
        assert config.no_progress_timeout_s == 120
        assert config.kill_grace_period_s == 5
        assert config.save_artifacts_on_failure is True
        assert config.ffmpeg_loglevel == "info"

    def test_from_config(self):
        config = RunnerConfig(ffmpeg_path="/opt/ffmpeg", global_timeout_s=60, artifacts_dir="/tmp/a")
        runner = FfmpegRunner.from_config(config)

        assert runner.ffmpeg_exe == "/opt/ffmpeg"
        assert runner.global_timeout_s == 60
        assert runner.temp_dir == "/tmp/a"


class TestIntegration:
    """Integration tests with mocked FFmpeg."""

    @patch("subprocess.Popen")
    def test_transcode_success(self, mock_popen):
        """Test successful rendition encode."""
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(ffmpeg_exe="ffmpeg", temp_dir=tmpdir)

            mock_process = MagicMock()
            mock_process.pid = 12345
            mock_process.wait.return_value = 0
            mock_process.stderr = iter(["out_time=00:00:02.00\n", "progress=end\n"])
            mock_popen.return_value = mock_process

            result = runner.transcode("input.mp4", "360p.mp4", bitrate="800k", expected_duration=2.0)

            assert result.success is True
            assert result.returncode == 0
            assert result.error_type is None
            assert result.final_progress.current_time_s == pytest.approx(2.0)

    @patch("subprocess.Popen")
    def test_transcode_failure(self, mock_popen):
        """Test failed encode is classified and leaves artifacts."""
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(ffmpeg_exe="ffmpeg", temp_dir=tmpdir)

            mock_process = MagicMock()
            mock_process.pid = 12345
            mock_process.wait.return_value = 1
            mock_process.stderr = iter(["nonexistent.mp4: No such file or directory\n"])
            mock_popen.return_value = mock_process

            result = runner.transcode("nonexistent.mp4", "360p.mp4", bitrate="800k")

            assert result.success is False
            assert result.returncode == 1
            assert result.error_type == FfmpegErrorType.PERMANENT
            assert "No such file" in result.stderr
            assert len(result.artifacts_saved) == 2

    @patch("subprocess.Popen")
    def test_no_progress_timeout_kills(self, mock_popen):
        """A child that never reports progress is killed and marked as a timeout."""
        runner = FfmpegRunner(
            ffmpeg_exe="ffmpeg",
            no_progress_timeout_s=0.05,
            poll_interval_s=0.01,
            save_artifacts_on_failure=False,
        )

        mock_process = MagicMock()
        mock_process.pid = 12345
        mock_process.wait.side_effect = subprocess.TimeoutExpired("ffmpeg", 0.01)
        mock_process.stderr = iter([])
        mock_popen.return_value = mock_process

        with patch.object(runner, "_kill_process_tree") as mock_kill:
            result = runner.transcode("input.mp4", "360p.mp4")

        assert result.success is False
        assert result.timeout_type == "no_progress"
        assert result.error_type == FfmpegErrorType.TIMEOUT
        mock_kill.assert_called()


class TestCheckFfmpeg:
    """Test dependency check."""

    @patch("subprocess.run")
    def test_found(self, mock_run):
        assert check_ffmpeg(RunnerConfig(ffmpeg_path="ffmpeg")) is True

    @patch("subprocess.run", side_effect=FileNotFoundError)
    def test_missing(self, mock_run):
        assert check_ffmpeg(RunnerConfig(ffmpeg_path="/nonexistent/ffmpeg")) is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
