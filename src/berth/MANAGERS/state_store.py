# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Persistence of per-service runtime records between CLI invocations.
"""
import fcntl
import json
import logging
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from pydantic import ValidationError

from ..MODELS.runtime_state import ServiceRecord

logger = logging.getLogger(__name__)


class StateStore:
    """
    A JSON file mapping service names to ServiceRecords. Every update is
    written through atomically.

    Read-modify-write cycles hold an exclusive lock on a sibling
    ``.lock`` file, so a detached supervisor and a separate CLI invocation
    never lose each other's updates.
    """
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        with self._lock, open(f"{self.path}.lock", "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load(self) -> Dict[str, ServiceRecord]:
        with self._locked():
            return self._read()

    def get(self, name: str) -> ServiceRecord:
        return self.load().get(name) or ServiceRecord(name=name)

    def update(self, name: str, **fields: Any) -> ServiceRecord:
        """
        Applies field changes to one record and saves the file.

        :return: The updated record.
        """
        with self._locked():
            records = self._read()
            current = records.get(name) or ServiceRecord(name=name)
            fields["updated_at"] = datetime.now(timezone.utc).isoformat()
            record = current.model_copy(update=fields)
            records[name] = record
            self._write(records)
            return record

    def remove(self, name: str) -> None:
        with self._locked():
            records = self._read()
            if records.pop(name, None) is not None:
                self._write(records)

    def clear(self) -> None:
        with self._locked():
            if os.path.exists(self.path):
                os.remove(self.path)

    def _read(self) -> Dict[str, ServiceRecord]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
            return {name: ServiceRecord.model_validate(data) for name, data in raw.get("services", {}).items()}
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return {}

    def _write(self, records: Dict[str, ServiceRecord]) -> None:
        tmp = f"{self.path}.{uuid.uuid4().hex[:8]}.tmp"
        payload = {"services": {n: r.model_dump(mode="json") for n, r in sorted(records.items())}}
        try:
            with open(tmp, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def pid(self, name: str) -> Optional[int]:
        return self.get(name).pid
