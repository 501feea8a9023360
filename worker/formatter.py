"""
Formatters that turn an uploaded source file into publishable track directories.

MediaFormatter probes a media file with ffprobe and splits it into one HLS
directory per elementary stream with ffmpeg, copying the streams (no
transcoding). Only H.264 video and AAC audio are accepted.

SubtitleFormatter extracts a zip of subtitle files and wraps each one in a
single-segment HLS playlist.

Each output directory holds:
    o.m3u8        media playlist
    master.m3u8   video only, references o.m3u8
    *.ts / subtitle.vtt
"""

import asyncio
import json
import logging
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from api.enums import ProcessingFailureReason
from config import FFMPEG_TIMEOUT, FFPROBE_TIMEOUT, HLS_SEGMENT_TIME

logger = logging.getLogger(__name__)

VIDEO_CODEC = "h264"
AUDIO_CODEC = "aac"

LOCAL_PLAYLIST_NAME = "o.m3u8"
LOCAL_MASTER_PLAYLIST_NAME = "master.m3u8"
LOCAL_SUBTITLE_NAME = "subtitle.vtt"

SUBTITLE_PLAYLIST = f"""#EXTM3U
#EXT-X-TARGETDURATION:10
#EXT-X-VERSION:3
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:10.0,
{LOCAL_SUBTITLE_NAME}
#EXT-X-ENDLIST
"""


class FormattingFailure(Exception):
    """The source file cannot be formatted. Reported to the user, not retried."""

    def __init__(self, reasons: List[ProcessingFailureReason], message: str = ""):
        self.reasons = reasons
        super().__init__(message or ", ".join(r.value for r in reasons))


@dataclass
class VideoInfo:
    duration_sec: int
    resolution: str


@dataclass
class MediaProbeResult:
    failures: List[ProcessingFailureReason] = field(default_factory=list)
    video: Optional[VideoInfo] = None
    audio_count: int = 0


def parse_probe_output(
    data: dict,
    existing_audio_tracks: int = 0,
    max_audio_tracks: int = 10,
) -> MediaProbeResult:
    """
    Validate ffprobe stream info.

    Only the first video stream is used; extra video streams are ignored.
    """
    result = MediaProbeResult()
    videos = 0
    for index, stream in enumerate(data.get("streams", [])):
        codec_type = stream.get("codec_type")
        codec = stream.get("codec_name")
        if codec_type == "video":
            if videos == 0:
                if codec != VIDEO_CODEC:
                    logger.info(f"Stream {index} is video with codec {codec} but requires {VIDEO_CODEC}")
                    result.failures.append(ProcessingFailureReason.VIDEO_CODEC_REQUIRES_H264)
                try:
                    duration = int(float(stream.get("duration") or data.get("format", {}).get("duration") or 0))
                except (TypeError, ValueError):
                    duration = 0
                result.video = VideoInfo(
                    duration_sec=duration,
                    resolution=f"{stream.get('width', 0)}x{stream.get('height', 0)}",
                )
            videos += 1
        elif codec_type == "audio":
            if result.audio_count < max_audio_tracks and codec != AUDIO_CODEC:
                logger.info(f"Stream {index} is audio with codec {codec} but requires {AUDIO_CODEC}")
                result.failures.append(ProcessingFailureReason.AUDIO_CODEC_REQUIRES_AAC)
            result.audio_count += 1

    if existing_audio_tracks + result.audio_count > max_audio_tracks:
        result.failures.append(ProcessingFailureReason.AUDIO_TOO_MANY_TRACKS)
    if result.video is None and result.audio_count == 0:
        result.failures.append(ProcessingFailureReason.MEDIA_FORMAT_INVALID)
    return result


async def _run(cmd: List[str], timeout: float, what: str) -> bytes:
    """Run a command, returning stdout. Raises RuntimeError on failure or timeout."""
    process = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"{what} timed out after {timeout}s")

    if process.returncode != 0:
        raise RuntimeError(f"{what} failed: {stderr.decode('utf-8', errors='ignore')[-2000:]}")
    return stdout


class MediaFormatter:
    """ffprobe/ffmpeg based media splitter."""

    def __init__(
        self,
        ffprobe_timeout: float = FFPROBE_TIMEOUT,
        ffmpeg_timeout: float = FFMPEG_TIMEOUT,
        segment_time: int = HLS_SEGMENT_TIME,
    ):
        self.ffprobe_timeout = ffprobe_timeout
        self.ffmpeg_timeout = ffmpeg_timeout
        self.segment_time = segment_time

    async def probe(
        self,
        source: Path,
        existing_audio_tracks: int = 0,
        max_audio_tracks: int = 10,
    ) -> MediaProbeResult:
        cmd = [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "stream=codec_name,codec_type,width,height,duration:format=duration",
            "-of",
            "json",
            str(source),
        ]
        try:
            stdout = await _run(cmd, self.ffprobe_timeout, "ffprobe")
            data = json.loads(stdout.decode("utf-8", errors="ignore"))
        except (RuntimeError, json.JSONDecodeError) as e:
            logger.info(f"Probing {source.name} failed: {e}")
            return MediaProbeResult(failures=[ProcessingFailureReason.MEDIA_FORMAT_INVALID])
        return parse_probe_output(data, existing_audio_tracks, max_audio_tracks)

    def build_command(self, source: Path, video_dir: Optional[Path], audio_dirs: List[Path]) -> List[str]:
        cmd = ["ffmpeg", "-y", "-i", str(source), "-loglevel", "error"]
        if video_dir is not None:
            cmd.extend([
                "-map", "0:v:0",
                "-c:v", "copy",
                "-f", "hls",
                "-hls_time", str(self.segment_time),
                "-hls_playlist_type", "vod",
                "-hls_segment_filename", str(video_dir / "%d.ts"),
                "-master_pl_name", LOCAL_MASTER_PLAYLIST_NAME,
                str(video_dir / LOCAL_PLAYLIST_NAME),
            ])
        for i, audio_dir in enumerate(audio_dirs):
            cmd.extend([
                "-map", f"0:a:{i}",
                "-c:a", "copy",
                "-f", "hls",
                "-hls_time", str(self.segment_time),
                "-hls_playlist_type", "vod",
                "-hls_segment_filename", str(audio_dir / "%d.ts"),
                str(audio_dir / LOCAL_PLAYLIST_NAME),
            ])
        return cmd

    async def format(self, source: Path, video_dir: Optional[Path], audio_dirs: List[Path]) -> None:
        """
        Split source into HLS directories.

        Raises:
            FormattingFailure: ffmpeg rejected the file
        """
        for directory in ([video_dir] if video_dir is not None else []) + list(audio_dirs):
            directory.mkdir(parents=True, exist_ok=True)
        try:
            await _run(self.build_command(source, video_dir, audio_dirs), self.ffmpeg_timeout, "ffmpeg")
        except RuntimeError as e:
            raise FormattingFailure([ProcessingFailureReason.MEDIA_FORMAT_FAILURE], str(e)) from e


class SubtitleFormatter:
    """Zip of subtitle files -> one HLS subtitle directory per file."""

    def extract(self, source: Path, work_dir: Path) -> List[Path]:
        """
        Unzip source into work_dir.

        Returns:
            Extracted files, sorted by relative path

        Raises:
            FormattingFailure: Not a valid zip, or it holds no files
        """
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            with zipfile.ZipFile(source) as archive:
                root = work_dir.resolve()
                for member in archive.infolist():
                    target = (work_dir / member.filename).resolve()
                    if root not in target.parents and target != root:
                        raise FormattingFailure(
                            [ProcessingFailureReason.SUBTITLE_ZIP_FORMAT_INVALID],
                            f"Zip entry escapes the work dir: {member.filename}",
                        )
                archive.extractall(work_dir)
        except (zipfile.BadZipFile, OSError) as e:
            raise FormattingFailure([ProcessingFailureReason.SUBTITLE_ZIP_FORMAT_INVALID], str(e)) from e

        files = sorted(
            (p for p in work_dir.rglob("*") if p.is_file()),
            key=lambda p: p.relative_to(work_dir).as_posix(),
        )
        if not files:
            raise FormattingFailure([ProcessingFailureReason.SUBTITLE_ZIP_FORMAT_INVALID], "Zip has no files")
        return files

    def format(self, subtitle_file: Path, out_dir: Path) -> None:
        out_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(subtitle_file, out_dir / LOCAL_SUBTITLE_NAME)
        (out_dir / LOCAL_PLAYLIST_NAME).write_text(SUBTITLE_PLAYLIST)

    @staticmethod
    def track_name(subtitle_file: Path) -> str:
        """Track name from the file name, up to its first dot."""
        return subtitle_file.name.split(".")[0]
