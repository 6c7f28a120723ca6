"""External tool collaborators.

The pipeline never aligns, signs or talks to a device itself. It goes through
three small interfaces:

- :class:`Aligner` (``zipalign``)
- :class:`Signer` (``keytool`` + ``apksigner``)
- :class:`Installer` (``adb``; user install or root mount)

The concrete implementations here shell out to the Android SDK tools.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shlex
import shutil
import subprocess
import threading
from typing import Protocol, Sequence

from apk_repack.config import DeployMode, RunConfig, SigningOptions
from apk_repack.errors import RepackError


class ToolError(RepackError):
    """Raised when an external tool is missing or fails."""


class Aligner(Protocol):
    def align(self, src: pathlib.Path, dst: pathlib.Path) -> None: ...


class Signer(Protocol):
    def sign(self, src: pathlib.Path, dst: pathlib.Path) -> None: ...


@dataclass(frozen=True, slots=True)
class DeviceApk:
    """An APK file handed to a device installer.

    :ivar path: Local APK file.
    :ivar package_name: Android package name, when known.
    """

    path: pathlib.Path
    package_name: str | None = None


class Installer(Protocol):
    def install(self, base: DeviceApk, splits: Sequence[DeviceApk]) -> None: ...

    def uninstall(self, package_name: str) -> None: ...


@dataclass(frozen=True, slots=True)
class Toolchain:
    """The collaborators of one run.

    :ivar aligner: Zip aligner.
    :ivar signer: Signer, or ``None`` in mount mode.
    :ivar installer: Device installer, or ``None`` when not deploying.
    """

    aligner: Aligner
    signer: Signer | None
    installer: Installer | None


def _sdk_roots() -> list[pathlib.Path]:
    roots: list[pathlib.Path] = []
    for var in ("ANDROID_HOME", "ANDROID_SDK_ROOT"):
        value: str | None = os.environ.get(var)
        if value is not None and value != "":
            roots.append(pathlib.Path(value))
    return roots


def _version_key(name: str) -> tuple[int, ...]:
    return tuple(int(p) if p.isdigit() is True else 0 for p in name.replace("-", ".").split("."))


def find_build_tool(name: str) -> str:
    """Locate an Android build tool.

    Looks on ``PATH`` first, then in the newest ``build-tools/<version>/`` of
    ``ANDROID_HOME`` / ``ANDROID_SDK_ROOT``.

    :param name: Tool name (e.g. ``zipalign``).
    :returns: Executable path.
    :raises ToolError: If the tool cannot be found.
    """

    in_path: str | None = shutil.which(name)
    if in_path is not None:
        return in_path

    candidates: list[tuple[tuple[int, ...], pathlib.Path]] = []
    for root in _sdk_roots():
        build_tools: pathlib.Path = root / "build-tools"
        if build_tools.is_dir() is False:
            continue
        for version_dir in build_tools.iterdir():
            tool: pathlib.Path = version_dir / name
            if tool.is_file() is True and os.access(tool, os.X_OK) is True:
                candidates.append((_version_key(version_dir.name), tool))

    if len(candidates) == 0:
        raise ToolError(
            f"{name} not found. Put it on PATH or set ANDROID_HOME to an SDK with build-tools installed."
        )
    candidates.sort(key=lambda item: item[0])
    return str(candidates[-1][1])


def _run(cmd: list[str], *, logger: logging.Logger, redact: Sequence[str] = ()) -> str:
    """Run a tool and return its stdout.

    :param cmd: Command line.
    :param logger: Logger for debug output.
    :param redact: Strings to mask in logs and error messages.
    :returns: Captured stdout.
    :raises ToolError: If the tool cannot be started or exits non-zero.
    """

    shown: str = " ".join(cmd)
    for secret in redact:
        shown = shown.replace(secret, "***")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"apk-repack: running: {shown}")

    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise ToolError(f"Failed to start {cmd[0]}: {e}") from e

    if proc.returncode != 0:
        output: str = "\n".join(part for part in (proc.stdout, proc.stderr) if part).strip()
        for secret in redact:
            output = output.replace(secret, "***")
        raise ToolError(f"Command failed (exit={proc.returncode}): {shown}\n{output or 'No output'}")
    return proc.stdout


class ZipalignAligner:
    """Aligns APKs with ``zipalign -p -f 4``.

    ``-p`` additionally page-aligns stored shared libraries so they can be
    mapped straight out of the APK.
    """

    def __init__(self, *, executable: str | None = None, logger: logging.Logger | None = None) -> None:
        self._executable: str | None = executable
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("apk_repack")

    def align(self, src: pathlib.Path, dst: pathlib.Path) -> None:
        if self._executable is None:
            self._executable = find_build_tool("zipalign")
        dst.parent.mkdir(parents=True, exist_ok=True)
        _run([self._executable, "-p", "-f", "4", str(src), str(dst)], logger=self._logger)


class ApkSigner:
    """Signs APKs with ``apksigner`` using one keystore per run.

    The keystore is created with ``keytool`` the first time it is needed.
    """

    def __init__(
        self,
        options: SigningOptions,
        *,
        apksigner: str | None = None,
        keytool: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._options: SigningOptions = options
        self._apksigner: str | None = apksigner
        self._keytool: str | None = keytool
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("apk_repack")
        self._lock: threading.Lock = threading.Lock()
        self._keystore_ready: bool = False

    @property
    def options(self) -> SigningOptions:
        return self._options

    def ensure_keystore(self) -> pathlib.Path:
        """Create the keystore if it does not exist yet.

        :returns: Keystore path.
        :raises ToolError: If ``keytool`` fails.
        """

        with self._lock:
            keystore: pathlib.Path = self._options.keystore_path
            if self._keystore_ready is True:
                return keystore
            if keystore.is_file() is False:
                self._logger.info(f"apk-repack: creating keystore {keystore}")
                keystore.parent.mkdir(parents=True, exist_ok=True)
                if self._keytool is None:
                    self._keytool = shutil.which("keytool")
                if self._keytool is None:
                    raise ToolError("keytool not found. Install a JDK or pass an existing --keystore.")
                password: str = self._options.password
                _run(
                    [
                        self._keytool,
                        "-genkeypair",
                        "-noprompt",
                        "-keystore",
                        str(keystore),
                        "-storepass",
                        password,
                        "-keypass",
                        password,
                        "-alias",
                        self._options.common_name,
                        "-dname",
                        f"CN={self._options.common_name}",
                        "-keyalg",
                        "RSA",
                        "-keysize",
                        "2048",
                        "-validity",
                        "10000",
                    ],
                    logger=self._logger,
                    redact=[password],
                )
            self._keystore_ready = True
            return keystore

    def sign(self, src: pathlib.Path, dst: pathlib.Path) -> None:
        keystore: pathlib.Path = self.ensure_keystore()
        if self._apksigner is None:
            self._apksigner = find_build_tool("apksigner")
        dst.parent.mkdir(parents=True, exist_ok=True)
        password: str = self._options.password
        _run(
            [
                self._apksigner,
                "sign",
                "--ks",
                str(keystore),
                "--ks-pass",
                f"pass:{password}",
                "--key-pass",
                f"pass:{password}",
                "--ks-key-alias",
                self._options.common_name,
                "--out",
                str(dst),
                str(src),
            ],
            logger=self._logger,
            redact=[password],
        )


class _Adb:
    """Shared plumbing for the ``adb`` based installers."""

    def __init__(self, device: str, *, executable: str = "adb", logger: logging.Logger | None = None) -> None:
        self.device: str = device
        self._executable: str = executable
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("apk_repack")

    def _adb(self, *args: str) -> str:
        return _run([self._executable, "-s", self.device, *args], logger=self._logger)

    def _su(self, script: str) -> str:
        return self._adb("shell", f"su -c {shlex.quote(script)}")


class UserAdb(_Adb):
    """Regular user-level install through ``adb install-multiple``."""

    def install(self, base: DeviceApk, splits: Sequence[DeviceApk]) -> None:
        self._logger.info(f"apk-repack: installing {base.path.name} on {self.device}")
        paths: list[str] = [str(base.path), *(str(split.path) for split in splits)]
        if len(splits) == 0:
            self._adb("install", "-r", paths[0])
        else:
            self._adb("install-multiple", "-r", *paths)

    def uninstall(self, package_name: str) -> None:
        self._logger.info(f"apk-repack: uninstalling {package_name} from {self.device}")
        self._adb("uninstall", package_name)


_MOUNT_DIR: str = "/data/adb/apk-repack"
_PUSH_DIR: str = "/data/local/tmp"


class RootAdb(_Adb):
    """Root install: bind-mount the patched base APK over the installed app.

    The stock app (including its splits) must already be installed; only the
    base APK is replaced.
    """

    @staticmethod
    def _installed_base(package_name: str) -> str:
        return f"$(pm path {package_name} | grep base | sed 's/package://')"

    def install(self, base: DeviceApk, splits: Sequence[DeviceApk]) -> None:
        package_name: str | None = base.package_name
        if package_name is None:
            raise ToolError("Mounting requires the package name of the base APK (--package-name).")
        if len(splits) > 0:
            self._logger.warning(
                f"apk-repack: mount mode replaces the base APK only; {len(splits)} split APKs stay as installed"
            )

        self._logger.info(f"apk-repack: mounting {base.path.name} over {package_name} on {self.device}")
        pushed: str = f"{_PUSH_DIR}/apk-repack-{package_name}.apk"
        mounted: str = f"{_MOUNT_DIR}/{package_name}.apk"
        self._adb("push", str(base.path), pushed)
        self._su(
            " && ".join(
                [
                    f"mkdir -p {_MOUNT_DIR}",
                    f"mv {pushed} {mounted}",
                    f"chmod 644 {mounted}",
                    f"chcon u:object_r:apk_data_file:s0 {mounted}",
                    f"am force-stop {package_name}",
                    f"mount -o bind {mounted} {self._installed_base(package_name)}",
                ]
            )
        )

    def uninstall(self, package_name: str) -> None:
        self._logger.info(f"apk-repack: unmounting {package_name} on {self.device}")
        mounted: str = f"{_MOUNT_DIR}/{package_name}.apk"
        self._su(
            " && ".join(
                [
                    f"am force-stop {package_name}",
                    f"umount -l {self._installed_base(package_name)}",
                    f"rm -f {mounted}",
                ]
            )
        )


def installer_for(
    *,
    device: str,
    mode: DeployMode,
    logger: logging.Logger | None = None,
) -> Installer:
    """Pick the install strategy for a deploy mode.

    :param device: Device serial.
    :param mode: Deploy mode.
    :param logger: Optional logger.
    :returns: Installer.
    """

    if mode is DeployMode.MOUNT:
        return RootAdb(device, logger=logger)
    return UserAdb(device, logger=logger)


def default_toolchain(config: RunConfig, *, logger: logging.Logger | None = None) -> Toolchain:
    """Build the SDK-backed collaborators a run configuration asks for.

    :param config: Run configuration.
    :param logger: Optional logger.
    :returns: Toolchain with a signer unless mounting, and an installer only when deploying.
    """

    signer: Signer | None = None
    if config.mount is False:
        signer = ApkSigner(config.signing, logger=logger)

    installer: Installer | None = None
    if config.device is not None:
        installer = installer_for(device=config.device, mode=config.mode, logger=logger)

    return Toolchain(aligner=ZipalignAligner(logger=logger), signer=signer, installer=installer)
