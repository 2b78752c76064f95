"""
Settings for Bluecap.

Settings describe the filesystem layout and the external programs Bluecap
hands off to. Defaults match a standard install (/etc, /var/lib, podman,
pkexec); an administrator can override them in /etc/bluecap/config.yaml.

Settings are never read from environment variables: the privileged phase
runs as root on behalf of another user and must not take its layout from
anything that user controls.

Example config.yaml:
    sharedstatedir: /srv/state
    container_runtime: podman
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from bluecap.errors import SettingsError

DEFAULT_SYSCONFDIR = Path("/etc")
DEFAULT_CONFIG_PATH = DEFAULT_SYSCONFDIR / "bluecap" / "config.yaml"

# Relative to the original caller's home directory
USER_DATA_CHILD = Path(".local") / "share" / "bluecap"


class Settings(BaseModel):
    """
    Filesystem layout and external programs.

    Attributes:
        sysconfdir: Root of administrator configuration (defaults, polkit rules)
        sharedstatedir: Root of global state (capsules, exports, persistence)
        container_runtime: Program that receives the sandbox invocation
        escalation_program: Program used to re-run Bluecap with elevated rights
        polkit_action_id: polkit action the generated rules match on
        sandbox_home: In-sandbox mount point of the caller's home directory
        sandbox_data: In-sandbox HOME, backed by a tmpfs
        sandbox_shell: Entrypoint that execs the requested command
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sysconfdir: Path = Field(default=DEFAULT_SYSCONFDIR)
    sharedstatedir: Path = Field(default=Path("/var/lib"))
    container_runtime: str = Field(default="podman", min_length=1)
    escalation_program: str = Field(default="pkexec", min_length=1)
    polkit_action_id: str = Field(default="com.refi64.Bluecap.run", min_length=1)
    sandbox_home: str = Field(default="/run/home")
    sandbox_data: str = Field(default="/var/data")
    sandbox_shell: str = Field(default="sh")

    # -------------------------------------------------------------------------
    # Administrator configuration
    # -------------------------------------------------------------------------

    @property
    def etc_storage_path(self) -> Path:
        return self.sysconfdir / "bluecap"

    @property
    def defaults_path(self) -> Path:
        return self.etc_storage_path / "defaults.json"

    @property
    def polkit_rules_path(self) -> Path:
        return self.sysconfdir / "polkit-1" / "rules.d" / "49-bluecap.rules"

    # -------------------------------------------------------------------------
    # Global state
    # -------------------------------------------------------------------------

    @property
    def global_storage_path(self) -> Path:
        return self.sharedstatedir / "bluecap"

    @property
    def capsules_path(self) -> Path:
        return self.global_storage_path / "capsules"

    @property
    def exports_bin_path(self) -> Path:
        return self.global_storage_path / "exports" / "bin"

    @property
    def trusted_path(self) -> Path:
        return self.global_storage_path / "polkit-trusted.json"

    @property
    def persistence_path(self) -> Path:
        return self.global_storage_path / "persistence"

    # -------------------------------------------------------------------------
    # Per-user state
    # -------------------------------------------------------------------------

    def user_capsules_path(self, home: Path) -> Path:
        return home / USER_DATA_CHILD / "capsules"

    def user_exports_bin_path(self, home: Path) -> Path:
        return home / USER_DATA_CHILD / "exports" / "bin"

    def user_persistence_path(self, home: Path) -> Path:
        return home / USER_DATA_CHILD / "persistence"


def load_settings(path: Path | str | None = None) -> Settings:
    """
    Load settings from a YAML file.

    A missing file means defaults. An empty file is treated the same way.

    Args:
        path: Path to the YAML file (default: /etc/bluecap/config.yaml)

    Returns:
        Validated Settings object

    Raises:
        SettingsError: If the file is not valid YAML or fails validation
    """
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        return Settings()

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(path=str(path), underlying_error=str(e)) from e

    if data is None:
        return Settings()

    try:
        return Settings.model_validate(data)
    except PydanticValidationError as e:
        raise SettingsError(path=str(path), underlying_error=str(e)) from e
