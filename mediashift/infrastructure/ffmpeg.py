"""ffmpeg wrapper with progress parsing.

ffmpeg is run with two output channels:

* stderr, the diagnostic stream: banner, ``Duration: 00:01:02.50`` and the
  ``frame= ... fps=30 ... speed=1.5x`` stats line;
* stdout, the machine progress stream enabled by ``-progress pipe:1``:
  ``key=value`` lines such as ``frame=120``, ``out_time=00:00:04.000000``.

Lines that match nothing are ignored. Progress callbacks are throttled by time,
not by line count.
"""

import collections
import logging
import queue
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple

from mediashift.domain.errors import TranscodeError
from mediashift.domain.models import TranscodeProgress, TranscodeResult

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
FPS_RE = re.compile(r"fps=\s*(\d+(?:\.\d+)?)")
SPEED_RE = re.compile(r"speed=\s*(\d+(?:\.\d+)?)x")
CLOCK_RE = re.compile(r"^(\d+):(\d+):(\d+(?:\.\d+)?)$")

DIAGNOSTIC = "diagnostic"
PROGRESS = "progress"

ProgressCallback = Callable[[TranscodeProgress], None]


def parse_clock(text: str) -> Optional[float]:
    """'HH:MM:SS.ff' -> seconds, None when not a clock value (e.g. 'N/A')."""
    match = CLOCK_RE.match(text.strip())
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


class ProgressParser:
    """Accumulates state from both ffmpeg streams and builds snapshots."""

    def __init__(self):
        self.duration = 0.0
        self.elapsed = 0.0
        self.frame_count = 0
        self.fps = 0.0
        self.speed = 0.0
        self._duration_seen = False

    def feed_diagnostic(self, line: str) -> None:
        if not self._duration_seen:
            match = DURATION_RE.search(line)
            if match:
                h, m, s = match.groups()
                self.duration = int(h) * 3600 + int(m) * 60 + float(s)
                self._duration_seen = True
                return
        match = FPS_RE.search(line)
        if match:
            self.fps = float(match.group(1))
        match = SPEED_RE.search(line)
        if match:
            self.speed = float(match.group(1))

    def feed_progress(self, line: str) -> None:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return
        value = value.strip()
        if key == "out_time":
            seconds = parse_clock(value)
            if seconds is not None:
                self.elapsed = max(0.0, seconds)
        elif key in ("out_time_us", "out_time_ms"):
            # ffmpeg reports microseconds under both names
            try:
                self.elapsed = max(0.0, int(value) / 1_000_000)
            except ValueError:
                pass
        elif key == "frame":
            try:
                self.frame_count = int(value)
            except ValueError:
                pass

    def snapshot(self) -> TranscodeProgress:
        if self.duration > 0:
            percent = min(100.0, max(0.0, self.elapsed / self.duration * 100.0))
        else:
            percent = 0.0
        remaining = max(0.0, self.duration - self.elapsed)
        if self.speed > 0:
            remaining = remaining / self.speed
        return TranscodeProgress(
            percent_complete=percent,
            elapsed_time=self.elapsed,
            frame_count=self.frame_count,
            fps=self.fps,
            speed_multiplier=self.speed,
            estimated_time_remaining=remaining,
        )


class ProgressThrottle:
    """Lets one emission through per interval of the given clock."""

    def __init__(self, interval_s: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.interval_s = interval_s
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self.interval_s:
            self._last = now
            return True
        return False


class TranscodeMonitor:
    """Runs one ffmpeg transcode as a blocking subprocess and reports progress."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        progress_interval_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        tail_lines: int = 20,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.progress_interval_s = progress_interval_s
        self._clock = clock
        self.tail_lines = tail_lines
        self.logger = logging.getLogger(__name__)

    def build_command(
        self,
        input_path: Path,
        output_path: Path,
        encoder: str,
        encoder_args: Optional[List[str]] = None,
    ) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-y",  # Overwrite leftovers of interrupted runs
            "-i", str(input_path),
            "-c:v", encoder,
        ]
        cmd.extend(encoder_args or [])
        cmd.extend([
            "-c:a", "copy",
            "-progress", "pipe:1",
            str(output_path),
        ])
        return cmd

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        encoder: str,
        encoder_args: Optional[List[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscodeResult:
        """Blocks until ffmpeg exits. Raises TranscodeError on non-zero exit or spawn failure."""
        cmd = self.build_command(input_path, output_path, encoder, encoder_args)
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        started = self._clock()

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                universal_newlines=True,  # also splits the '\r' stats lines
                bufsize=1,
            )
        except (OSError, ValueError) as e:
            self.logger.error(f"FFMPEG_SPAWN_FAILED: {input_path} ({e})")
            raise TranscodeError(reason=str(e)) from e

        parser = ProgressParser()
        throttle = ProgressThrottle(self.progress_interval_s, self._clock)
        tail: Deque[str] = collections.deque(maxlen=self.tail_lines)
        lines: "queue.Queue[Optional[Tuple[str, str]]]" = queue.Queue()

        def _reader(stream, channel: str):
            try:
                if stream is not None:
                    for line in stream:
                        lines.put((channel, line))
            finally:
                lines.put(None)

        readers = [
            threading.Thread(target=_reader, args=(process.stderr, DIAGNOSTIC), daemon=True),
            threading.Thread(target=_reader, args=(process.stdout, PROGRESS), daemon=True),
        ]
        for reader in readers:
            reader.start()

        open_streams = len(readers)
        try:
            while open_streams:
                entry = lines.get()
                if entry is None:
                    open_streams -= 1
                    continue
                channel, line = entry
                if channel == DIAGNOSTIC:
                    parser.feed_diagnostic(line)
                    if line.strip():
                        tail.append(line.rstrip())
                else:
                    parser.feed_progress(line)
                if on_progress and throttle.ready():
                    self._report(on_progress, parser.snapshot())

            returncode = process.wait()
        finally:
            if process.poll() is None:
                self.logger.info(f"FFMPEG_INTERRUPTED: {input_path}")
                self._stop(process)
            for reader in readers:
                reader.join(timeout=1)
        wall = self._clock() - started

        if returncode != 0:
            self.logger.error(
                f"FFMPEG_END: {input_path} status=failed code={returncode} elapsed={wall:.2f}s"
            )
            raise TranscodeError(exit_code=returncode, tail=list(tail))

        if on_progress:
            final = parser.snapshot()
            final.percent_complete = 100.0 if parser.duration > 0 else final.percent_complete
            final.estimated_time_remaining = 0.0
            self._report(on_progress, final)
        self.logger.info(f"FFMPEG_END: {input_path} status=completed elapsed={wall:.2f}s")
        return TranscodeResult(exit_code=returncode, duration=parser.duration, wall_seconds=wall)

    def _report(self, on_progress: ProgressCallback, progress: TranscodeProgress) -> None:
        try:
            on_progress(progress)
        except Exception as e:
            self.logger.warning(f"Progress callback failed: {e}")

    def _stop(self, process) -> None:
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
