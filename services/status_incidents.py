import asyncio
import os
from typing import List, Optional

import structlog
import yaml
from pydantic import ValidationError

from models.status_incident import StatusIncident

logger = structlog.get_logger(__name__)

DEFAULT_SYNC_INTERVAL = 300  # seconds
YAML_SUFFIXES = (".yaml", ".yml")


def parse_incidents_dir(path: str) -> List[StatusIncident]:
    """Parse every .yaml/.yml file in path, newest first.

    Unreadable, malformed or invalid files are skipped with a warning.
    Raises OSError if the directory itself can't be listed.
    """
    incidents = []
    for entry in sorted(os.scandir(path), key=lambda e: e.name):
        if not entry.is_file() or not entry.name.endswith(YAML_SUFFIXES):
            continue
        try:
            with open(entry.path, "r") as f:
                data = yaml.safe_load(f) or {}
            incidents.append(StatusIncident.model_validate(data))
        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.warning("Skipping incident file", file=entry.name, error=str(e))

    incidents.sort(key=lambda i: i.started_at, reverse=True)
    return incidents


class IncidentCatalog:
    """Status page incidents kept as YAML files, optionally in a git repository.

    With a repo_url, the repository is cloned into path on first sync and
    pulled every sync interval. Without one, path is read once at start.
    """

    def __init__(self, path: str, repo_url: Optional[str] = None, interval: float = DEFAULT_SYNC_INTERVAL):
        self.path = path
        self.repo_url = repo_url
        self.interval = interval
        self._incidents: List[StatusIncident] = []

    @classmethod
    def from_settings(cls, path: Optional[str], repo_url: Optional[str], interval: float) -> Optional["IncidentCatalog"]:
        """Returns None when incidents are not configured."""
        if not repo_url:
            if not path or not os.path.isdir(path):
                logger.debug("No incident repo or local directory, incidents disabled")
                return None
            logger.info("Using local incident directory", path=path)
        return cls(path or "incidents", repo_url, interval)

    def load(self) -> int:
        """Re-read the directory. Keeps the previous incidents if it can't be listed."""
        try:
            incidents = parse_incidents_dir(self.path)
        except OSError as e:
            logger.warning("Failed to load incidents", path=self.path, error=str(e))
            return len(self._incidents)
        # Readers see either the old list or the new one.
        self._incidents = incidents
        return len(incidents)

    def get_incidents(self) -> List[StatusIncident]:
        return list(self._incidents)

    def get_incident(self, incident_id: str) -> Optional[StatusIncident]:
        for incident in self._incidents:
            if incident.id == incident_id:
                return incident
        return None

    async def sync_repo(self) -> bool:
        if os.path.isdir(self.path):
            args = ["git", "-C", self.path, "pull", "--rebase"]
        else:
            logger.info("Cloning incidents repository", url=self.repo_url)
            args = ["git", "clone", "--depth", "1", self.repo_url, self.path]
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as e:
            logger.error("Failed to run git", error=str(e))
            return False
        if process.returncode != 0:
            logger.error("Failed to sync incidents repo", error=stderr.decode(errors="replace").strip())
            return False
        return True

    async def start(self) -> int:
        """Initial sync (when backed by a repository) and load."""
        if self.repo_url:
            await self.sync_repo()
        count = await asyncio.to_thread(self.load)
        logger.info("Loaded status incidents", count=count)
        return count

    async def run(self, stop_event: asyncio.Event) -> None:
        """Pull and reload every interval until stop_event is set. No-op without a repository."""
        if not self.repo_url:
            return
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            if await self.sync_repo():
                await asyncio.to_thread(self.load)
