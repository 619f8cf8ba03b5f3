from __future__ import annotations

import copy
import os
import tempfile
from typing import Optional

from pydantic import TypeAdapter

from .config import DispatchSettings
from .models import DispatchState


_state_adapter = TypeAdapter(DispatchState)


class Storage:
    def load_all(self) -> Optional[DispatchState]:
        raise NotImplementedError

    def save_all(self, state: DispatchState) -> None:
        raise NotImplementedError


class InMemoryStorage(Storage):
    def __init__(self, initial: Optional[DispatchState] = None):
        self._state = copy.deepcopy(initial)
        self.saves = 0

    def load_all(self) -> Optional[DispatchState]:
        return copy.deepcopy(self._state)

    def save_all(self, state: DispatchState) -> None:
        self._state = copy.deepcopy(state)
        self.saves += 1


class JsonFileStorage(Storage):
    """
    Whole-snapshot JSON file. Writes go to a temp file in the same directory
    and are swapped in with os.replace, so a crash never leaves half a file.
    """
    def __init__(self, path: str):
        self.path = path

    def load_all(self) -> Optional[DispatchState]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "rb") as f:
            return _state_adapter.validate_json(f.read())

    def save_all(self, state: DispatchState) -> None:
        payload = _state_adapter.dump_json(state, indent=2)
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp = tempfile.mkstemp(prefix=".dispatch-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


def make_storage(settings: DispatchSettings) -> Storage:
    if settings.data_file:
        return JsonFileStorage(settings.data_file)
    return InMemoryStorage()
