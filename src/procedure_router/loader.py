from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from .models import Procedure, WorkflowCollection, WorkflowDefinition
from .parser import DIRECTORY_ERROR_KEY, WorkflowParser, WorkflowSchemaError, WorkflowStructureError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".procedure_router"


class GitSourceError(RuntimeError):
    """Raised when the definitions repository cannot be cloned or updated."""


class GitClient:
    """Thin wrapper over the ``git`` CLI used to materialize definition repositories."""

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    def _run(self, args: list[str], cwd: Path | None = None) -> None:
        subprocess.run([self.executable, *args], cwd=cwd, check=True, capture_output=True, text=True)

    def clone(self, source: str, branch: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        self._run(["clone", "--branch", branch, "--single-branch", "--depth", "1", source, str(destination)])

    def fetch(self, repo_path: Path) -> None:
        self._run(["fetch", "origin"], cwd=repo_path)

    def checkout(self, repo_path: Path, branch: str) -> None:
        self._run(["checkout", branch], cwd=repo_path)

    def reset_hard(self, repo_path: Path, ref: str) -> None:
        self._run(["reset", "--hard", ref], cwd=repo_path)


@dataclass(frozen=True)
class _CacheEntry:
    digest: str
    mtime_ns: int
    collection: WorkflowCollection


def is_git_source(source: str) -> bool:
    """Return True when ``source`` looks like a git remote rather than a local path."""
    if source.startswith("https://") and source.endswith(".git"):
        return True
    if source.startswith("git@") and ":" in source:
        return True
    return source.startswith("git://")


def repo_name_from_url(source: str) -> str:
    """Extract the repository name from a git URL.

    ``https://host/org/repo.git`` and ``git@host:org/repo.git`` both give ``repo``.
    """
    name = source.removesuffix(".git")
    if name.startswith("git@") and ":" in name:
        name = name.rsplit(":", 1)[-1] or name
    return name.rstrip("/").rsplit("/", 1)[-1] or name


class WorkflowLoader:
    """Discover, validate and cache external workflow definitions.

    The source is either a local path or a git URL. Git sources are checked out
    under ``<home>/workflows/<repo>``; ``path`` then selects a directory or a
    single YAML file inside the source. Per-file problems never raise: they are
    recorded in :meth:`errors` and the valid files still load.
    """

    def __init__(
        self,
        source: str,
        branch: str = "main",
        path: str = "workflows/",
        home: Path | None = None,
        cache_enabled: bool = True,
        parser: WorkflowParser | None = None,
        git: GitClient | None = None,
    ) -> None:
        if not source or not source.strip():
            raise ValueError("source must be a non-empty path or git URL")
        self.source = source.strip()
        self.branch = branch
        self.path = path
        self.home = home if home is not None else DEFAULT_HOME
        self.cache_enabled = cache_enabled
        self.parser = parser or WorkflowParser()
        self.git = git or GitClient()
        self.is_git_source = is_git_source(self.source)

        self._lock = threading.Lock()
        # Serializes whole load/refresh runs; _lock only guards the swap.
        self._write_lock = threading.RLock()
        self._working_directory: Path | None = None
        self._procedures: dict[str, Procedure] = {}
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._errors: dict[str, str] = {}
        self._fingerprints: dict[str, str] = {}
        self._cache: dict[Path, _CacheEntry] = {}

    @property
    def checkout_path(self) -> Path:
        return self.home / "workflows" / repo_name_from_url(self.source)

    def workflow_path(self) -> Path:
        """Return the resolved directory or file the definitions are read from."""
        if self.is_git_source:
            return (self._working_directory or self.checkout_path) / self.path
        return Path(self.source) / self.path

    def _clone(self) -> None:
        checkout = self.checkout_path
        try:
            self.git.clone(self.source, self.branch, checkout)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise GitSourceError(f"Failed to clone {self.source} (branch {self.branch}): {_describe(exc)}") from exc
        self._working_directory = checkout

    def _reclone(self, reason: BaseException) -> None:
        checkout = self.checkout_path
        logger.warning("Git update of %s failed (%s); re-cloning", checkout, _describe(reason))
        shutil.rmtree(checkout, ignore_errors=True)
        self._working_directory = None
        self._clone()

    def _materialize(self) -> None:
        checkout = self.checkout_path
        if not checkout.exists():
            try:
                self.git.clone(self.source, self.branch, checkout)
            except (subprocess.CalledProcessError, OSError) as exc:
                self._reclone(exc)
                return
            self._working_directory = checkout
            return
        try:
            self.git.fetch(checkout)
            self.git.checkout(checkout, self.branch)
            self.git.reset_hard(checkout, f"origin/{self.branch}")
        except (subprocess.CalledProcessError, OSError) as exc:
            self._reclone(exc)
            return
        self._working_directory = checkout

    def _parse_cached(self, file_path: Path) -> WorkflowCollection:
        if not self.cache_enabled:
            return self.parser.parse_file(file_path)
        content = file_path.read_bytes()
        digest = hashlib.sha256(content).hexdigest()
        mtime_ns = file_path.stat().st_mtime_ns
        entry = self._cache.get(file_path)
        if entry is not None and entry.digest == digest and entry.mtime_ns == mtime_ns:
            return entry.collection
        collection = self.parser.parse_and_validate(content.decode("utf-8"))
        self._cache[file_path] = _CacheEntry(digest=digest, mtime_ns=mtime_ns, collection=collection)
        return collection

    def load(self) -> dict[str, Procedure]:
        """Load every definition from the configured source.

        The previously published definitions stay visible until the new set
        is swapped in, and stay in place if the load raises.

        Returns:
            A fresh mapping of procedure name to ``Procedure``.

        Raises:
            GitSourceError: If a git source cannot be materialized even after a re-clone.
        """
        with self._write_lock:
            return self._load()

    def _load(self) -> dict[str, Procedure]:
        if self.is_git_source and self._working_directory is None:
            self._materialize()

        base_path = self.workflow_path()
        procedures: dict[str, Procedure] = {}
        workflows: dict[str, WorkflowDefinition] = {}
        errors: dict[str, str] = {}

        if not base_path.exists():
            errors[DIRECTORY_ERROR_KEY] = f"Workflow directory does not exist: {base_path}"
        elif base_path.is_file():
            try:
                collection = self._parse_cached(base_path)
            except (OSError, UnicodeDecodeError, WorkflowStructureError, WorkflowSchemaError) as exc:
                errors[base_path.name] = str(exc)
            else:
                self._convert(collection.workflows, base_path.parent, procedures, workflows, errors)
        else:
            result = self.parser.parse_directory(base_path, parse_file=self._parse_cached)
            errors.update(result.errors)
            self._convert(result.collection.workflows, base_path, procedures, workflows, errors)

        for name, message in errors.items():
            logger.warning("Workflow load error in %s: %s", name, message)
        self._log_changes(workflows)

        with self._lock:
            self._procedures = procedures
            self._workflows = workflows
            self._errors = errors
        logger.info("Loaded %d workflow(s) from %s", len(procedures), base_path)
        return dict(procedures)

    def _convert(
        self,
        definitions: list[WorkflowDefinition],
        base_path: Path,
        procedures: dict[str, Procedure],
        workflows: dict[str, WorkflowDefinition],
        errors: dict[str, str],
    ) -> None:
        for definition in definitions:
            try:
                procedure = self.parser.to_procedure(definition, base_path)
            except ValueError as exc:
                errors[definition.name] = str(exc)
                continue
            workflows[definition.name] = definition
            procedures[definition.name] = procedure

    def _log_changes(self, workflows: dict[str, WorkflowDefinition]) -> None:
        fingerprints = {name: definition.fingerprint for name, definition in workflows.items()}
        for name, fingerprint in fingerprints.items():
            previous = self._fingerprints.get(name)
            if previous is None:
                logger.info("Workflow '%s' added (fingerprint %s)", name, fingerprint[:12])
            elif previous != fingerprint:
                logger.info("Workflow '%s' changed (fingerprint %s -> %s)", name, previous[:12], fingerprint[:12])
        for name in sorted(set(self._fingerprints) - set(fingerprints)):
            logger.info("Workflow '%s' removed", name)
        self._fingerprints = fingerprints

    def refresh(self) -> dict[str, Procedure]:
        """Drop cached state, update the git checkout if any, and reload.

        Raises:
            GitSourceError: If the checkout cannot be updated or re-cloned.
        """
        with self._write_lock:
            self._cache.clear()
            if self.is_git_source and self._working_directory is not None:
                try:
                    self.git.fetch(self._working_directory)
                    self.git.reset_hard(self._working_directory, f"origin/{self.branch}")
                except (subprocess.CalledProcessError, OSError) as exc:
                    self._reclone(exc)
            return self._load()

    async def aload(self) -> dict[str, Procedure]:
        return await asyncio.to_thread(self.load)

    async def arefresh(self) -> dict[str, Procedure]:
        return await asyncio.to_thread(self.refresh)

    def get(self, name: str) -> Procedure | None:
        return self._procedures.get(name)

    def get_workflow(self, name: str) -> WorkflowDefinition | None:
        return self._workflows.get(name)

    def all_procedures(self) -> list[Procedure]:
        return list(self._procedures.values())

    def all_workflows(self) -> list[WorkflowDefinition]:
        return list(self._workflows.values())

    def snapshot(self) -> tuple[list[Procedure], list[WorkflowDefinition]]:
        """Return procedures and definitions from the same published load."""
        with self._lock:
            return list(self._procedures.values()), list(self._workflows.values())

    def collection(self) -> WorkflowCollection:
        return WorkflowCollection(workflows=self.all_workflows())

    @property
    def count(self) -> int:
        return len(self._procedures)

    def has_workflows(self) -> bool:
        return bool(self._procedures)

    def errors(self) -> dict[str, str]:
        return dict(self._errors)

    def cleanup(self) -> None:
        """Remove the git checkout (if any) and forget all loaded definitions."""
        if self.is_git_source and self._working_directory is not None:
            try:
                shutil.rmtree(self._working_directory)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Failed to remove workflow checkout %s: %s", self._working_directory, exc)
            self._working_directory = None
        self._cache.clear()
        with self._lock:
            self._procedures = {}
            self._workflows = {}
            self._errors = {}
        self._fingerprints = {}


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        stderr = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
        return stderr or f"exit status {exc.returncode}"
    return str(exc)
