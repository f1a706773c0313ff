from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MODELS_BY_RUNNER: dict[str, str] = {
    "gemini": "gemini-2.5-flash",
    "openai": "gpt-4o-mini",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RouterSettings:
    """Router settings loaded from environment with fail-fast validation."""

    runner_type: str = "gemini"
    model: str = ""
    timeout_seconds: int = 10
    home: str = "~/.procedure_router"
    workflows_source: str = ""
    workflows_branch: str = "main"
    workflows_path: str = "workflows/"
    cache_enabled: bool = True
    vcs_platform: str = "github"
    validation_max_iterations: int = 3
    validation_parse_retries: int = 2

    @classmethod
    def from_env(cls) -> "RouterSettings":
        return cls(
            runner_type=os.getenv("ROUTER_RUNNER_TYPE", "gemini"),
            model=os.getenv("ROUTER_MODEL", ""),
            timeout_seconds=_get_env_int("ROUTER_TIMEOUT_SECONDS", default=10, minimum=1, maximum=600),
            home=os.getenv("ROUTER_HOME", "~/.procedure_router"),
            workflows_source=os.getenv("ROUTER_WORKFLOWS_SOURCE", ""),
            workflows_branch=os.getenv("ROUTER_WORKFLOWS_BRANCH", "main"),
            workflows_path=os.getenv("ROUTER_WORKFLOWS_PATH", "workflows/"),
            cache_enabled=_get_env_bool("ROUTER_CACHE_ENABLED", default=True),
            vcs_platform=os.getenv("ROUTER_VCS_PLATFORM", "github"),
            validation_max_iterations=_get_env_int(
                "ROUTER_VALIDATION_MAX_ITERATIONS", default=3, minimum=1, maximum=10
            ),
            validation_parse_retries=_get_env_int("ROUTER_VALIDATION_PARSE_RETRIES", default=2, minimum=0, maximum=5),
        ).normalized()

    @property
    def home_path(self) -> Path:
        return Path(self.home).expanduser()

    @property
    def resolved_model(self) -> str:
        """Return the explicit model override or the default for the runner type."""
        return self.model or DEFAULT_MODELS_BY_RUNNER[self.runner_type]

    def normalized(self) -> "RouterSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        runner_type = self.runner_type.strip().lower()
        if runner_type not in DEFAULT_MODELS_BY_RUNNER:
            raise ValueError(
                f"ROUTER_RUNNER_TYPE must be one of: {', '.join(sorted(DEFAULT_MODELS_BY_RUNNER))}, "
                f"got: {self.runner_type!r}"
            )

        vcs_platform = self.vcs_platform.strip().lower()
        if vcs_platform not in {"github", "azure-devops"}:
            raise ValueError(f"ROUTER_VCS_PLATFORM must be one of: azure-devops, github, got: {self.vcs_platform!r}")

        if not self.home.strip():
            raise ValueError("ROUTER_HOME must be non-empty")
        branch = self.workflows_branch.strip()
        if not branch:
            raise ValueError("ROUTER_WORKFLOWS_BRANCH must be non-empty")
        workflows_path = self.workflows_path.strip()
        if not workflows_path:
            raise ValueError("ROUTER_WORKFLOWS_PATH must be non-empty")

        # -- Numeric bounds validation --
        if not 1 <= self.validation_max_iterations <= 10:
            raise ValueError(
                f"ROUTER_VALIDATION_MAX_ITERATIONS must be between 1 and 10, got: {self.validation_max_iterations}"
            )
        if not 0 <= self.validation_parse_retries <= 5:
            raise ValueError(
                f"ROUTER_VALIDATION_PARSE_RETRIES must be between 0 and 5, got: {self.validation_parse_retries}"
            )
        if self.timeout_seconds < 1:
            raise ValueError(f"ROUTER_TIMEOUT_SECONDS must be >= 1, got: {self.timeout_seconds}")

        return RouterSettings(
            runner_type=runner_type,
            model=self.model.strip(),
            timeout_seconds=self.timeout_seconds,
            home=self.home.strip(),
            workflows_source=self.workflows_source.strip(),
            workflows_branch=branch,
            workflows_path=workflows_path,
            cache_enabled=self.cache_enabled,
            vcs_platform=vcs_platform,
            validation_max_iterations=self.validation_max_iterations,
            validation_parse_retries=self.validation_parse_retries,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
