"""
Persistence of call artifacts.

The calling core only needs two write operations: register the recording of a
finished call and store its transcript. Anything that implements the Storage
protocol (a database repository, an API client) can be plugged into
CallSession; two simple implementations are provided here.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.conversation import ConversationTurn

logger = logging.getLogger(LOGGER_NAME)


class CallRecord(BaseModel):
    """A stored call recording."""

    call_id: str
    recording_path: str
    duration: Optional[float] = Field(None, description="Recording length in seconds")


class Storage(Protocol):
    async def create_call_recording(
        self, call_id: str, recording_path: Path, duration: Optional[float] = None
    ) -> CallRecord: ...

    async def create_conversation_transcript(self, call_id: str, turns: List[ConversationTurn]) -> int: ...


class InMemoryStorage:
    """Keeps everything in dictionaries. Useful for tests and dry runs."""

    def __init__(self):
        self.recordings: Dict[str, CallRecord] = {}
        self.transcripts: Dict[str, List[ConversationTurn]] = {}

    async def create_call_recording(
        self, call_id: str, recording_path: Path, duration: Optional[float] = None
    ) -> CallRecord:
        record = CallRecord(call_id=call_id, recording_path=str(recording_path), duration=duration)
        self.recordings[call_id] = record
        return record

    async def create_conversation_transcript(self, call_id: str, turns: List[ConversationTurn]) -> int:
        self.transcripts.setdefault(call_id, []).extend(turns)
        return len(turns)


class JsonFileStorage:
    """
    Writes one ``<call_id>.json`` document per call next to the recordings.

    The document holds the recording reference and the transcript turns in
    conversation order.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, call_id: str) -> Path:
        return self.directory / f"{call_id}.json"

    def _read(self, call_id: str) -> Dict:
        path = self._path(call_id)
        if not path.exists():
            return {"call_id": call_id, "recording": None, "transcript": []}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, call_id: str, document: Dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(call_id).write_text(json.dumps(document, indent=2), encoding="utf-8")

    async def create_call_recording(
        self, call_id: str, recording_path: Path, duration: Optional[float] = None
    ) -> CallRecord:
        record = CallRecord(call_id=call_id, recording_path=str(recording_path), duration=duration)

        def _store():
            document = self._read(call_id)
            document["recording"] = record.model_dump()
            self._write(call_id, document)

        await asyncio.get_running_loop().run_in_executor(None, _store)
        logger.info(f"[{call_id}] Recording stored: {recording_path}")
        return record

    async def create_conversation_transcript(self, call_id: str, turns: List[ConversationTurn]) -> int:
        def _store():
            document = self._read(call_id)
            document["transcript"].extend(turn.model_dump(mode="json") for turn in turns)
            self._write(call_id, document)

        await asyncio.get_running_loop().run_in_executor(None, _store)
        logger.info(f"[{call_id}] Stored {len(turns)} transcript turns")
        return len(turns)
