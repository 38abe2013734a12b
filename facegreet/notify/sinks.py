"""Notification sinks: where a greeting ends up once the throttle lets it through."""
from __future__ import annotations

import hashlib
import os
import subprocess
import tempfile
import threading

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from gtts import gTTS

from facegreet.config import SpeechConfig
from facegreet.errors import NotificationError
from facegreet.utils.log import get_logger

logger = get_logger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    def notify(self, identity: str, text: str) -> None:
        """Deliver `text` for `identity`; raise NotificationError on failure."""


class LogSink(NotificationSink):
    """Writes greetings to the log (speech disabled, headless runs)."""

    def notify(self, identity: str, text: str) -> None:
        logger.info(f"[SAY] {text}")


class SpeechSink(NotificationSink):
    """Speaks greetings with gTTS.

    Synthesized audio is cached on disk by (language, text), so a greeting is
    only synthesized once; playback runs the configured player command
    (ffplay by default) and blocks until it exits.
    """

    def __init__(self, config: Optional[SpeechConfig] = None):
        self.config = config or SpeechConfig()
        self.cache_dir = Path(self.config.cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._gen_lock = threading.Lock()

    def audio_path(self, text: str) -> Path:
        key = hashlib.md5((self.config.lang + "||" + text).encode("utf-8")).hexdigest()[:16]
        mp3_path = (self.cache_dir / f"{key}.mp3").resolve()

        if not mp3_path.exists():
            with self._gen_lock:
                if not mp3_path.exists():
                    fd, tmp = tempfile.mkstemp(prefix=f".{key}.", suffix=".mp3", dir=str(self.cache_dir))
                    os.close(fd)
                    try:
                        gTTS(text=text, lang=self.config.lang).save(tmp)
                        os.replace(tmp, mp3_path)
                    finally:
                        if os.path.exists(tmp):
                            os.unlink(tmp)
        return mp3_path

    def play(self, path: Path) -> None:
        cmd = [*self.config.player, str(path)]
        try:
            r = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise NotificationError(f"cannot run audio player {cmd[0]!r}: {e}") from e
        if r.returncode != 0:
            raise NotificationError(f"audio player exited with {r.returncode}: {r.stderr.strip()}")

    def notify(self, identity: str, text: str) -> None:
        try:
            path = self.audio_path(text)
        except Exception as e:
            raise NotificationError(f"speech synthesis failed for {identity!r}: {e}") from e
        logger.info(f"[SAY] {text}")
        self.play(path)
