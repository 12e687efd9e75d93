"""
Encoder pipeline catalogue and the per-start pipeline artifact.

Pipelines are gstreamer launch strings shipped as files under
``<pipelines_dir>/{custom,<hw>,generic}/``. Each is identified by the SHA-1
of ``<dir>/<file>`` so ids stay stable across reinstalls.
"""

import hashlib
import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from .jsoncache import write_text_file

LOGGER = logging.getLogger("uplink_router.pipelines")

NO_AUDIO_ID = "No audio"
DEFAULT_AUDIO_ID = "Pipeline default"
AUDIO_CODECS = ("opus", "aac")

ALSA_SRC_RE = re.compile(r"alsasrc device=[A-Za-z0-9:=]+")
ALSA_PIPELINE_RE = re.compile(r"alsasrc device=[A-Za-z0-9:]+(.|[\s])*?mux\. *\s?")
AUDIO_CODEC_RE = re.compile(r"voaacenc\s+bitrate=(\d+)\s+!\s+aacparse\s+!")
OVERLAY_RE = re.compile(r"textoverlay[^!]*name=overlay[^!]*!")


@dataclass(frozen=True)
class Pipeline:
    id: str
    name: str
    path: Path
    asrc: bool = False
    acodec: bool = False


def audio_props(text: str) -> Tuple[bool, bool]:
    """Whether a pipeline captures audio from ALSA and whether it encodes it."""
    return bool(ALSA_SRC_RE.search(text)), bool(AUDIO_CODEC_RE.search(text))


def pipeline_id(name: str) -> str:
    return hashlib.sha1(name.encode("utf-8")).hexdigest()


class PipelineCatalog:
    def __init__(
        self,
        base_dir: Path,
        hw: str,
        path_exists: Callable[[str], bool] = os.path.exists,
    ):
        self.base_dir = Path(base_dir)
        self.hw = hw
        self.path_exists = path_exists
        self._lock = threading.Lock()
        self._pipelines: Dict[str, Pipeline] = {}

    def _read_dir(self, subdir: str, exclude: Optional[str] = None) -> Dict[str, Pipeline]:
        found: Dict[str, Pipeline] = {}
        directory = self.base_dir / subdir
        try:
            files = sorted(os.listdir(directory))
        except OSError as exc:
            LOGGER.error("Failed to read the pipeline files in %s: %s", directory, exc)
            return found
        for fname in files:
            name = f"{subdir}/{fname}"
            if exclude and re.search(exclude, name):
                continue
            path = directory / fname
            try:
                asrc, acodec = audio_props(path.read_text(errors="replace"))
            except OSError as exc:
                LOGGER.error("Failed to read pipeline %s: %s", path, exc)
                continue
            pid = pipeline_id(name)
            found[pid] = Pipeline(pid, name, path, asrc, acodec)
        return found

    def refresh(self) -> Dict[str, Pipeline]:
        pipelines: Dict[str, Pipeline] = {}
        pipelines.update(self._read_dir("custom"))
        exclude = None
        # HDMI capture pipelines are useless on boards without the HDMI input
        if self.hw == "rk3588" and not self.path_exists("/dev/hdmirx"):
            exclude = "h265_hdmi"
        pipelines.update(self._read_dir(self.hw, exclude))
        pipelines.update(self._read_dir("generic"))
        with self._lock:
            self._pipelines = pipelines
        LOGGER.info("Loaded %d pipelines", len(pipelines))
        return dict(pipelines)

    def get(self, pid: str) -> Optional[Pipeline]:
        with self._lock:
            return self._pipelines.get(pid)

    def view(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                pid: {"name": p.name, "asrc": p.asrc, "acodec": p.acodec}
                for pid, p in self._pipelines.items()
            }


def render_pipeline(
    text: str,
    asrc: bool,
    acodec: bool,
    audio_id: Optional[str],
    codec: Optional[str],
    remove_overlay: bool,
) -> str:
    if asrc and audio_id == NO_AUDIO_ID:
        text = ALSA_PIPELINE_RE.sub("", text)
    elif asrc and audio_id and audio_id != DEFAULT_AUDIO_ID:
        text = ALSA_SRC_RE.sub(f"alsasrc device=hw:{audio_id}", text)

    if acodec and codec == "opus" and audio_id != NO_AUDIO_ID:
        text = AUDIO_CODEC_RE.sub(
            lambda m: (
                "audioresample quality=10 sinc-filter-mode=1 ! "
                f"opusenc bitrate={m.group(1)} ! opusparse !"
            ),
            text,
        )

    if remove_overlay:
        text = OVERLAY_RE.sub("", text)
    return text


def build_pipeline_file(
    pipeline: Pipeline,
    out_path: Path,
    audio_id: Optional[str],
    codec: Optional[str],
    remove_overlay: bool,
) -> Optional[Path]:
    """Write the pipeline actually handed to the encoder; None if that failed."""
    try:
        text = pipeline.path.read_text()
    except OSError as exc:
        LOGGER.error("Failed to read pipeline %s: %s", pipeline.path, exc)
        return None
    text = render_pipeline(text, pipeline.asrc, pipeline.acodec, audio_id, codec, remove_overlay)
    if not write_text_file(out_path, text):
        return None
    return Path(out_path)
