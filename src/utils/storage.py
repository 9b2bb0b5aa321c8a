"""Key-value persistence for connection configs, query history and passwords.

The core only depends on the two small interfaces below. The JSON file
implementations are what the app wires up by default; the in-memory ones are
handy for tests and embedding.
"""
import codecs
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

# Users may have files written by other tools on Windows.
_READ_ENCODINGS = ("utf-8", "utf-8-sig", "cp936", "latin-1")


class StateStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def update(self, key: str, value: Any) -> None: ...


class SecretStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def store(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStateStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def update(self, key: str, value: Any) -> None:
        self._data[key] = value


class MemorySecretStore:
    def __init__(self):
        self._secrets: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._secrets.get(key)

    def store(self, key: str, value: str) -> None:
        self._secrets[key] = value

    def delete(self, key: str) -> None:
        self._secrets.pop(key, None)


def _read_json_file(path: Path) -> Dict[str, Any]:
    """Read a JSON object from path trying several encodings.

    If nothing parses, the file is copied to <name>.bak and an empty dict is
    returned so the application can start with a clean slate.
    """
    if not path.exists():
        return {}
    for enc in _READ_ENCODINGS:
        try:
            with open(path, "r", encoding=enc) as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning("Ignoring %s: top-level value is not an object", path)
            break
        except (UnicodeDecodeError, json.JSONDecodeError):
            continue
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            return {}

    bad_path = path.with_suffix(path.suffix + ".bak")
    try:
        shutil.copyfile(path, bad_path)
        logger.warning("Unreadable store %s backed up to %s", path, bad_path)
    except OSError as e:
        logger.warning("Failed to back up unreadable store %s: %s", path, e)
    return {}


def _write_json_file(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)
    tmp_path.replace(path)


class JsonStateStore:
    """All keys in a single JSON document. Writes raise so callers can report failures."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data = _read_json_file(self.path)
        logger.debug("Loaded state keys from %s: %r", self.path, list(self._data.keys()))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def update(self, key: str, value: Any) -> None:
        staged = dict(self._data)
        staged[key] = value
        _write_json_file(self.path, staged)
        self._data = staged


class JsonSecretStore:
    """Passwords in their own file, rot13 encoded.

    This is obfuscation, not encryption. Plug in an OS keyring backed store
    implementing SecretStore when that matters.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._secrets: Dict[str, str] = {}
        for key, value in _read_json_file(self.path).items():
            if isinstance(value, str):
                self._secrets[key] = codecs.decode(value, "rot_13")

    def _flush(self, secrets: Dict[str, str]) -> None:
        encoded = {k: codecs.encode(v, "rot_13") for k, v in secrets.items()}
        _write_json_file(self.path, encoded)

    def get(self, key: str) -> Optional[str]:
        return self._secrets.get(key)

    def store(self, key: str, value: str) -> None:
        staged = dict(self._secrets)
        staged[key] = value
        self._flush(staged)
        self._secrets = staged

    def delete(self, key: str) -> None:
        if key not in self._secrets:
            return
        staged = dict(self._secrets)
        del staged[key]
        self._flush(staged)
        self._secrets = staged
