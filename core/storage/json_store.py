"""
File-backed persistence for recommendation state, feedback and settings.

Layout under the data directory (default ~/.kc):

    recommendations.json         list of Recommendation
    prediction_feedback.json     append-only list of FeedbackRecord
    prediction_settings.json     ThresholdConfig as camelCase key/values

Every write goes to a temporary file in the same directory followed by
os.replace, so a crash never leaves a half-written file behind. Any I/O or
decoding failure is raised as PersistenceError.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

import structlog
from pydantic import TypeAdapter, ValidationError

from core.domain.errors import PersistenceError
from core.domain.models import FeedbackRecord, Recommendation, ThresholdConfig

logger = structlog.get_logger(__name__)

RECOMMENDATIONS_FILE = "recommendations.json"
FEEDBACK_FILE = "prediction_feedback.json"
SETTINGS_FILE = "prediction_settings.json"

_DIR_MODE = 0o700
_FILE_MODE = 0o600

_recommendations_adapter = TypeAdapter(list[Recommendation])
_feedback_adapter = TypeAdapter(list[FeedbackRecord])


class StateStore(Protocol):
    """Where recommendation state and the feedback log survive restarts."""

    def load_recommendations(self) -> list[Recommendation]: ...

    def save_recommendations(self, records: list[Recommendation]) -> None: ...

    def load_feedback(self) -> list[FeedbackRecord]: ...

    def save_feedback(self, records: list[FeedbackRecord]) -> None: ...


class ConfigStore(Protocol):
    """Read/write access to the user-tunable thresholds."""

    def load_thresholds(self) -> ThresholdConfig: ...

    def save_thresholds(self, config: ThresholdConfig) -> None: ...


class JsonStateStore:
    """StateStore and ConfigStore backed by JSON files in one directory."""

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir).expanduser()
        self.logger = logger.bind(component="json_state_store", data_dir=str(self.data_dir))

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _read_bytes(self, name: str) -> bytes | None:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.error("state_read_failed", file=name, error=str(e))
            raise PersistenceError(f"Could not read {path}: {e}") from e

    def _write_bytes(self, name: str, data: bytes) -> None:
        path = self._path(name)
        tmp_name = None
        try:
            self.data_dir.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=self.data_dir)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, _FILE_MODE)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            self.logger.error("state_write_failed", file=name, error=str(e))
            raise PersistenceError(f"Could not write {path}: {e}") from e

        self.logger.debug("state_written", file=name, size_bytes=len(data))

    def _load_list(self, name: str, adapter: TypeAdapter) -> list[Any]:
        raw = self._read_bytes(name)
        if raw is None:
            return []
        try:
            return adapter.validate_json(raw)
        except ValidationError as e:
            self.logger.error("state_decode_failed", file=name, errors=e.error_count())
            raise PersistenceError(f"Corrupt state file {self._path(name)}") from e

    def load_recommendations(self) -> list[Recommendation]:
        return self._load_list(RECOMMENDATIONS_FILE, _recommendations_adapter)

    def save_recommendations(self, records: list[Recommendation]) -> None:
        self._write_bytes(
            RECOMMENDATIONS_FILE, _recommendations_adapter.dump_json(records, by_alias=True, indent=2)
        )

    def load_feedback(self) -> list[FeedbackRecord]:
        return self._load_list(FEEDBACK_FILE, _feedback_adapter)

    def save_feedback(self, records: list[FeedbackRecord]) -> None:
        self._write_bytes(FEEDBACK_FILE, _feedback_adapter.dump_json(records, by_alias=True, indent=2))

    def load_thresholds(self) -> ThresholdConfig:
        """Missing or unreadable settings fall back to defaults; values are clamped."""
        raw = self._read_bytes(SETTINGS_FILE)
        if raw is None:
            return ThresholdConfig()
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("settings file must contain a JSON object")
            return ThresholdConfig.model_validate(data)
        except (ValueError, ValidationError) as e:
            self.logger.warning("settings_invalid_using_defaults", error=str(e))
            return ThresholdConfig()

    def save_thresholds(self, config: ThresholdConfig) -> None:
        self._write_bytes(
            SETTINGS_FILE, config.model_dump_json(by_alias=True, indent=2).encode("utf-8")
        )


class InMemoryStateStore:
    """StateStore that keeps everything in process memory."""

    def __init__(self) -> None:
        self.recommendations: list[Recommendation] = []
        self.feedback: list[FeedbackRecord] = []

    def load_recommendations(self) -> list[Recommendation]:
        return list(self.recommendations)

    def save_recommendations(self, records: list[Recommendation]) -> None:
        self.recommendations = list(records)

    def load_feedback(self) -> list[FeedbackRecord]:
        return list(self.feedback)

    def save_feedback(self, records: list[FeedbackRecord]) -> None:
        self.feedback = list(records)


class InMemoryConfigStore:
    """ConfigStore for embedding the engine without a settings file."""

    def __init__(self, config: ThresholdConfig | None = None) -> None:
        self.config = config or ThresholdConfig()

    def load_thresholds(self) -> ThresholdConfig:
        return self.config

    def save_thresholds(self, config: ThresholdConfig) -> None:
        self.config = config
