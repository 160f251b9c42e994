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
Exclusive lock on a deployment root, so two sessions never run against
the same directory at once.
"""
import logging
import os
from pathlib import Path

import psutil

from ..errors import SessionLockedError

logger = logging.getLogger(__name__)


class SessionLock:
    """
    Lock file holding the pid of the owning process. A lock left behind by a
    process that no longer exists is taken over.
    """
    def __init__(self, path: Path):
        self.path = Path(path)
        self.acquired = False

    def acquire(self):
        """
        :raises SessionLockedError: If a live process holds the lock.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self._owner()
                if owner == os.getpid():
                    raise SessionLockedError(
                        f"A deployment in this process already holds {self.path.parent}"
                    )
                if owner is not None and psutil.pid_exists(owner):
                    raise SessionLockedError(
                        f"Another deployment (pid {owner}) is running against {self.path.parent}"
                    )
                logger.warning(f"Removing stale lock file {self.path}")
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as handle:
                handle.write(str(os.getpid()))
            self.acquired = True
            return
        raise SessionLockedError(f"Could not acquire {self.path}")

    def release(self):
        if self.acquired:
            self.path.unlink(missing_ok=True)
            self.acquired = False

    def _owner(self):
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
