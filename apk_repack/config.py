"""Run configuration.

All run toggles are resolved and validated once, up front, into an immutable
:class:`RunConfig`. Pipeline code reads the resolved values and never
re-checks raw arguments.
"""

from dataclasses import dataclass
import enum
import pathlib


class ConfigError(ValueError):
    """Raised when run arguments cannot be resolved into a valid configuration."""


class DeployMode(enum.Enum):
    """How patched APKs reach a device.

    ``INSTALL`` performs a regular signed user-level install. ``MOUNT`` skips
    signing and bind-mounts the aligned base APK over the installed app
    (requires root).
    """

    INSTALL = "install"
    MOUNT = "mount"


@dataclass(frozen=True, slots=True)
class SigningOptions:
    """Signing identity shared by every variant of a run.

    :ivar common_name: Certificate common name, also used as key alias.
    :ivar password: Keystore and key password.
    :ivar keystore_path: Keystore file (created when missing).
    """

    common_name: str
    password: str
    keystore_path: pathlib.Path


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Resolved choices for one run.

    :ivar work_directory: Temporary work root (wiped at start).
    :ivar output_directory: Directory receiving the final APKs.
    :ivar mode: Install or mount.
    :ivar device: Device serial to deploy to, or ``None`` for no deploy.
    :ivar low_storage: Delete stage directories as soon as they are superseded.
    :ivar clean: Delete the work root (and deployed outputs) at the end.
    :ivar signing: Signing identity.
    :ivar jobs: Worker threads for per-variant stage work.
    """

    work_directory: pathlib.Path
    output_directory: pathlib.Path
    mode: DeployMode
    device: str | None
    low_storage: bool
    clean: bool
    signing: SigningOptions
    jobs: int = 1

    @property
    def mount(self) -> bool:
        return self.mode is DeployMode.MOUNT

    @property
    def deploy(self) -> bool:
        return self.device is not None


DEFAULT_WORK_DIRECTORY: pathlib.Path = pathlib.Path("apk-repack-cache")
DEFAULT_OUTPUT_DIRECTORY: pathlib.Path = pathlib.Path("apk-repack")
DEFAULT_COMMON_NAME: str = "apk-repack"
DEFAULT_PASSWORD: str = "apk-repack"

_MIN_PASSWORD_LEN: int = 6


def resolve_run_config(
    *,
    base_apk: pathlib.Path,
    output_directory: pathlib.Path = DEFAULT_OUTPUT_DIRECTORY,
    work_directory: pathlib.Path = DEFAULT_WORK_DIRECTORY,
    device: str | None = None,
    mount: bool = False,
    low_storage: bool = False,
    clean: bool = False,
    common_name: str = DEFAULT_COMMON_NAME,
    password: str = DEFAULT_PASSWORD,
    keystore_path: pathlib.Path | None = None,
    jobs: int = 1,
) -> RunConfig:
    """Resolve user-supplied run arguments into a :class:`RunConfig`.

    :param base_apk: Base APK; its name derives the default keystore name.
    :param output_directory: Output directory.
    :param work_directory: Work root.
    :param device: Optional device serial to deploy to.
    :param mount: Mount instead of install.
    :param low_storage: Delete intermediates eagerly.
    :param clean: Delete the work root at the end.
    :param common_name: Signing common name.
    :param password: Signing password.
    :param keystore_path: Optional explicit keystore.
    :param jobs: Worker threads (1+).
    :returns: Resolved configuration.
    :raises ConfigError: If any value is invalid.
    """

    if jobs < 1:
        raise ConfigError(f"Invalid jobs={jobs}; expected 1 or more.")
    if common_name.strip() == "":
        raise ConfigError("The signing common name must not be empty.")
    if len(password) < _MIN_PASSWORD_LEN:
        raise ConfigError(f"The signing password must be at least {_MIN_PASSWORD_LEN} characters.")
    if device is not None and device.strip() == "":
        raise ConfigError("The device serial must not be empty.")

    work_resolved: pathlib.Path = work_directory.resolve()
    out_resolved: pathlib.Path = output_directory.resolve()
    if out_resolved == work_resolved or out_resolved.is_relative_to(work_resolved) is True:
        raise ConfigError(
            f"Output directory {output_directory} must not live inside the work directory "
            f"{work_directory}; the work directory is wiped on every run."
        )
    if pathlib.Path.cwd().resolve().is_relative_to(work_resolved) is True:
        raise ConfigError(f"Refusing to use {work_directory} as work directory; it contains the current directory.")

    resolved_keystore: pathlib.Path
    if keystore_path is not None:
        resolved_keystore = keystore_path.resolve()
    else:
        resolved_keystore = out_resolved / f"{base_apk.stem}.keystore"

    return RunConfig(
        work_directory=work_directory,
        output_directory=output_directory,
        mode=DeployMode.MOUNT if mount is True else DeployMode.INSTALL,
        device=device,
        low_storage=low_storage,
        clean=clean,
        signing=SigningOptions(
            common_name=common_name,
            password=password,
            keystore_path=resolved_keystore,
        ),
        jobs=jobs,
    )
