"""Forwarding of transcript text logs to a persistence collaborator."""

import asyncio
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from voice_relay.transcript_source import split_speaker_label

logger = logging.getLogger(__name__)


class SegmentStore(Protocol):
    """Persistence collaborator for transcript and translation text."""

    async def log_segment(self, session_id: str, text: str) -> None: ...

    async def save_segment(
        self,
        session_id: str,
        speaker_id: str,
        text: str,
        start_ms: int,
        end_ms: int,
    ) -> str | None: ...

    async def save_translation(self, segment_id: str, text: str, target_lang: str) -> None: ...


class LoggingSegmentStore:
    """Store that only writes records to the application log."""

    async def log_segment(self, session_id: str, text: str) -> None:
        speaker, content = split_speaker_label(text)
        if not content.strip():
            return
        logger.info("[%s] %s: %s", session_id, speaker or "Unknown", content)

    async def save_segment(
        self,
        session_id: str,
        speaker_id: str,
        text: str,
        start_ms: int,
        end_ms: int,
    ) -> str | None:
        segment_id = str(uuid.uuid4())
        logger.debug("Segment %s saved for session %s (%d-%d ms)", segment_id, session_id, start_ms, end_ms)
        return segment_id

    async def save_translation(self, segment_id: str, text: str, target_lang: str) -> None:
        logger.debug("Translation saved for segment %s (%s)", segment_id, target_lang)


class JsonlSegmentStore:
    """Appends transcript, segment and translation records to a JSON Lines file.

    File writes run in the default executor so the event loop never blocks on
    disk I/O.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._write_lock = threading.Lock()
        logger.info("JsonlSegmentStore writing to %s", self.path)

    async def log_segment(self, session_id: str, text: str) -> None:
        speaker, content = split_speaker_label(text)
        if not content.strip():
            return
        await self._append(
            {
                "type": "transcript",
                "session_id": session_id,
                "speaker_id": speaker or "Unknown",
                "content": content,
                "timestamp": _now(),
            }
        )

    async def save_segment(
        self,
        session_id: str,
        speaker_id: str,
        text: str,
        start_ms: int,
        end_ms: int,
    ) -> str | None:
        segment_id = str(uuid.uuid4())
        await self._append(
            {
                "type": "segment",
                "id": segment_id,
                "session_id": session_id,
                "speaker_id": speaker_id,
                "start_ms": start_ms,
                "end_ms": end_ms,
                "text": text,
                "is_final": True,
            }
        )
        return segment_id

    async def save_translation(self, segment_id: str, text: str, target_lang: str) -> None:
        await self._append(
            {
                "type": "translation",
                "segment_id": segment_id,
                "target_lang": target_lang,
                "text": text,
            }
        )

    async def _append(self, record: dict) -> None:
        line = json.dumps(record, ensure_ascii=False)
        await asyncio.get_running_loop().run_in_executor(None, self._write_line, line)

    def _write_line(self, line: str) -> None:
        with self._write_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
