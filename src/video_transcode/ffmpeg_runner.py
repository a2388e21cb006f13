"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

Every call to the media engine (probe, transcode, frame extraction) goes
through FfmpegRunner so that a stuck encoder can never hold a worker slot
forever.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from FFmpeg stderr
- Process tree cleanup via psutil
- Error classification (permanent / transient / timeout)
- Artifact preservation on failure
"""

import json
import logging
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import imageio_ffmpeg
import psutil

from .errors import ProbeError
from .models import RunnerConfig

logger = logging.getLogger(__name__)

# Lines of stderr kept for error reporting
STDERR_TAIL_LINES = 200


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Network timeout, disk I/O stall
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Total duration (if known)
    fps: float = 0.0                 # Current FPS
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    last_update: float = 0.0         # time.monotonic() of last update

    @property
    def percent(self) -> float:
        if self.total_duration_s <= 0:
            return 0.0
        return min(100.0, self.current_time_s / self.total_duration_s * 100.0)


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    timeout_type: Optional[str] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def error_summary(self, limit: int = 500) -> str:
        """Short human-readable failure description."""
        if self.timeout_type:
            return f"ffmpeg {self.timeout_type} timeout after {self.duration_s:.1f}s"
        tail = self.stderr.strip()[-limit:] if self.stderr else "Unknown error"
        return f"ffmpeg exited with {self.returncode}: {tail}"


def get_ffmpeg_exe(config: Optional[RunnerConfig] = None) -> str:
    """Resolve the ffmpeg executable (configured path or bundled binary)."""
    if config and config.ffmpeg_path:
        return config.ffmpeg_path
    return imageio_ffmpeg.get_ffmpeg_exe()


def get_ffprobe_exe(config: Optional[RunnerConfig] = None) -> str:
    """Resolve the ffprobe executable.

    imageio-ffmpeg only ships ffmpeg, so ffprobe comes from the config,
    PATH, or the directory of the resolved ffmpeg binary.
    """
    if config and config.ffprobe_path:
        return config.ffprobe_path
    found = shutil.which("ffprobe")
    if found:
        return found
    ffmpeg_exe = get_ffmpeg_exe(config)
    sibling = Path(ffmpeg_exe).with_name(Path(ffmpeg_exe).name.replace("ffmpeg", "ffprobe"))
    return str(sibling)


def check_ffmpeg(config: Optional[RunnerConfig] = None) -> bool:
    """Verify ffmpeg is installed and runs."""
    try:
        subprocess.run(
            [get_ffmpeg_exe(config), "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=10,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return False


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    A runner tracks a single child process at a time; create one runner per
    concurrent job.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=1800, no_progress_timeout_s=120)
        >>> result = runner.transcode(
        ...     "input.mp4", "720p.mp4",
        ...     codec="libx264", bitrate="2500k", video_filter="scale=1280:720",
        ... )
        >>> if not result.success:
        ...     print(result.error_summary())
    """

    def __init__(
        self,
        ffmpeg_exe: Optional[str] = None,
        ffprobe_exe: Optional[str] = None,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        probe_timeout_s: int = 30,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 0.5,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_exe: ffmpeg executable (None = bundled imageio-ffmpeg binary)
            ffprobe_exe: ffprobe executable (None = resolved lazily)
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            probe_timeout_s: Timeout for ffprobe calls
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = system temp)
            progress_callback: Optional callback for progress updates
            poll_interval_s: How often the watchdog checks the child process
        """
        self.ffmpeg_exe = ffmpeg_exe
        self.ffprobe_exe = ffprobe_exe
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.probe_timeout_s = probe_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._monitor_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: RunnerConfig,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> "FfmpegRunner":
        return cls(
            ffmpeg_exe=config.ffmpeg_path,
            ffprobe_exe=config.ffprobe_path,
            global_timeout_s=config.global_timeout_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            probe_timeout_s=config.probe_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            ffmpeg_loglevel=config.ffmpeg_loglevel,
            temp_dir=config.artifacts_dir,
            progress_callback=progress_callback,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def probe(self, source_path: str) -> Dict[str, Any]:
        """Run ffprobe and return its parsed JSON (format + streams).

        Raises:
            ProbeError: If ffprobe fails, times out, or prints invalid JSON
        """
        cmd = [
            self._get_ffprobe_exe(),
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            source_path,
        ]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                check=True,
                text=True,
                timeout=self.probe_timeout_s,
            )
            return json.loads(result.stdout or "{}")
        except subprocess.CalledProcessError as e:
            raise ProbeError(f"ffprobe failed: {e.stderr or e.returncode}") from e
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe output parsing failed: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out after {self.probe_timeout_s}s") from e
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started: {e}") from e

    def transcode(
        self,
        source_path: str,
        output_path: str,
        codec: str = "libx264",
        bitrate: Optional[str] = None,
        video_filter: Optional[str] = None,
        filter_complex: bool = False,
        extra_inputs: Sequence[str] = (),
        preset: str = "fast",
        crf: int = 23,
        pixel_format: str = "yuv420p",
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
        movflags: str = "+faststart",
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Encode one progressive-download rendition.

        Quality is CRF-driven with the rendition bitrate as a VBV cap
        (-maxrate/-bufsize), so simple scenes stay small and complex ones
        never exceed the ladder bitrate.

        Args:
            source_path: Input video file
            output_path: Output MP4 path
            codec: Video encoder
            bitrate: Rendition bitrate cap (None or "0" = uncapped CRF)
            video_filter: Filter chain (-vf) or graph (-filter_complex)
            filter_complex: Treat video_filter as a graph whose output label is [v]
            extra_inputs: Additional inputs (e.g. a watermark image)
            preset: Encoding speed preset
            crf: Constant Rate Factor
            pixel_format: Output pixel format
            audio_codec: Audio encoder
            audio_bitrate: Audio bitrate
            movflags: MP4 muxer flags
            expected_duration: Source duration for progress reporting

        Returns:
            FfmpegResult with success status and metadata
        """
        cmd = [self._get_ffmpeg_exe(), "-y", "-i", source_path]
        for extra in extra_inputs:
            cmd.extend(["-i", extra])

        if video_filter and filter_complex:
            cmd.extend(["-filter_complex", video_filter, "-map", "[v]", "-map", "0:a?"])
        else:
            if video_filter:
                cmd.extend(["-vf", video_filter])
            cmd.extend(["-map", "0:v:0", "-map", "0:a?"])

        cmd.extend([
            "-c:v", codec,
            "-preset", preset,
            "-crf", str(crf),
        ])
        if bitrate and bitrate != "0":
            cmd.extend(["-maxrate", bitrate, "-bufsize", _double_bitrate(bitrate)])
        cmd.extend([
            "-pix_fmt", pixel_format,
            "-c:a", audio_codec,
            "-b:a", audio_bitrate,
            "-movflags", movflags,
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ])

        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    def extract_frame(
        self,
        source_path: str,
        output_path: str,
        timestamp: float,
        video_filter: Optional[str] = None,
        quality: int = 2,
    ) -> FfmpegResult:
        """Extract a single still frame as JPEG.

        Uses fast seek before input (-ss before -i).
        """
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-ss", f"{timestamp:.3f}",
            "-i", source_path,
            "-frames:v", "1",
        ]
        if video_filter:
            cmd.extend(["-vf", video_filter])
        cmd.extend([
            "-q:v", str(quality),
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ])
        return self._run_ffmpeg(cmd)

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Expected output duration for progress calculation

        Returns:
            FfmpegResult with execution details
        """
        start = time.monotonic()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
        logger.debug("Running ffmpeg: %s", " ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1  # Line buffered for real-time progress
            )

            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True
            )
            self._monitor_thread.start()

            returncode, timeout_type = self._wait_with_watchdog(start)

            if self._monitor_thread:
                self._monitor_thread.join(timeout=2)

            duration = time.monotonic() - start
            stderr = "".join(self._stderr_tail)

            error_type = None
            if timeout_type:
                error_type = FfmpegErrorType.TIMEOUT
            elif returncode != 0:
                error_type = self._classify_error(stderr)

            artifacts = []
            if returncode != 0 and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=(returncode == 0),
                returncode=returncode,
                stderr=stderr,
                duration_s=duration,
                error_type=error_type,
                timeout_type=timeout_type,
                final_progress=self._progress,
                artifacts_saved=artifacts
            )

        except Exception:
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _wait_with_watchdog(self, start: float):
        """Wait for the child, killing it on global or no-progress timeout.

        Returns:
            Tuple of (returncode, timeout_type or None)
        """
        while True:
            try:
                return self._process.wait(timeout=self.poll_interval_s), None
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if now - start > self.global_timeout_s:
                logger.warning("ffmpeg exceeded global timeout of %ss, killing", self.global_timeout_s)
                self._kill_process_tree()
                return -1, "global"

            last_activity = self._progress.last_update or start
            if now - last_activity > self.no_progress_timeout_s:
                logger.warning(
                    "ffmpeg made no progress for %ss, killing", self.no_progress_timeout_s
                )
                self._kill_process_tree()
                return -1, "no_progress"

    def _monitor_progress(self, stderr_stream) -> None:
        """Monitor FFmpeg stderr for progress updates.

        FFmpeg progress format:
            frame=123
            fps=25.00
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        try:
            for line in stderr_stream:
                self._stderr_tail.append(line)

                if "out_time=" in line:
                    match = re.search(r'out_time=(\d+):(\d+):(\d+)(?:\.(\d+))?', line)
                    if match:
                        h, m, s, frac = match.groups()
                        fraction = float(f"0.{frac}") if frac else 0.0
                        self._progress.current_time_s = (
                            int(h) * 3600 + int(m) * 60 + int(s) + fraction
                        )
                        self._progress.last_update = time.monotonic()

                if "frame=" in line:
                    match = re.search(r'frame=\s*(\d+)', line)
                    if match:
                        self._progress.frame = int(match.group(1))

                if "fps=" in line:
                    match = re.search(r'fps=\s*([\d.]+)', line)
                    if match:
                        self._progress.fps = float(match.group(1))

                if "speed=" in line:
                    match = re.search(r'speed=\s*([\d.]+)x', line)
                    if match:
                        self._progress.speed = float(match.group(1))

                now = time.monotonic()
                if self.progress_callback and now - last_callback >= 2.0:
                    try:
                        self.progress_callback(self._progress)
                        last_callback = now
                    except Exception:
                        logger.exception("Progress callback failed")
        except (OSError, ValueError):
            # Stream closed underneath us when the process was killed
            logger.debug("ffmpeg stderr stream closed")

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period (default 5s)
        3. SIGKILL survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            procs = [parent] + parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg pid %s did not exit after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify FFmpeg error from its stderr."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n\n")
                escaped = [f"'{arg}'" if re.search(r"[\s$`\"\\;\[\]]", arg) else arg for arg in cmd]
                f.write(" \\\n  ".join(escaped) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg command script: %s", e)

        if artifacts:
            logger.info("Saved ffmpeg failure artifacts: %s", ", ".join(map(str, artifacts)))
        return artifacts

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    def _get_ffmpeg_exe(self) -> str:
        if not self.ffmpeg_exe:
            self.ffmpeg_exe = imageio_ffmpeg.get_ffmpeg_exe()
        return self.ffmpeg_exe

    def _get_ffprobe_exe(self) -> str:
        if not self.ffprobe_exe:
            self.ffprobe_exe = get_ffprobe_exe(RunnerConfig(ffmpeg_path=self.ffmpeg_exe))
        return self.ffprobe_exe


def _double_bitrate(bitrate: str) -> str:
    """'2500k' -> '5000k' (VBV buffer of two seconds at the cap)."""
    match = re.fullmatch(r"(\d+(?:\.\d+)?)([kKmM]?)", bitrate.strip())
    if not match:
        return bitrate
    value, unit = match.groups()
    doubled = float(value) * 2
    text = str(int(doubled)) if doubled.is_integer() else f"{doubled:g}"
    return f"{text}{unit}"
