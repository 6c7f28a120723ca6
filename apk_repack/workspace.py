"""Work directory layout and cleanup policy.

Every run owns one work root laid out as::

    <root>/cli/patched/<apk>
    <root>/cli/aligned/<apk>
    <root>/cli/signed/<apk>

The root is wiped at the start of a run so outputs of an earlier run are never
picked up again. Stage directories are created on first use.
"""

from dataclasses import dataclass
import enum
import logging
import pathlib
import shutil

from apk_repack.errors import RepackError


class WorkspaceError(RepackError):
    """Raised when the work directory cannot be prepared."""


class Stage(enum.Enum):
    """Pipeline stages, in the order every variant moves through them."""

    PATCHED = "patched"
    ALIGNED = "aligned"
    SIGNED = "signed"
    OUTPUT = "output"
    INSTALLED = "installed"
    CLEANED = "cleaned"


_STAGE_DIRS: frozenset[Stage] = frozenset({Stage.PATCHED, Stage.ALIGNED, Stage.SIGNED})


@dataclass(frozen=True, slots=True)
class Workspace:
    """Work root of one run.

    :ivar root: Work root directory.
    :ivar low_storage: Delete intermediate stage directories once superseded.
    """

    root: pathlib.Path
    low_storage: bool = False

    @property
    def cli_dir(self) -> pathlib.Path:
        return self.root / "cli"

    @property
    def patched_dir(self) -> pathlib.Path:
        return self.cli_dir / Stage.PATCHED.value

    @property
    def aligned_dir(self) -> pathlib.Path:
        return self.cli_dir / Stage.ALIGNED.value

    @property
    def signed_dir(self) -> pathlib.Path:
        return self.cli_dir / Stage.SIGNED.value

    def stage_dir(self, stage: Stage) -> pathlib.Path:
        """Return a stage directory, creating it if needed.

        :param stage: One of ``PATCHED``, ``ALIGNED`` or ``SIGNED``.
        :returns: Existing directory path.
        :raises WorkspaceError: If the stage has no directory.
        """

        if stage not in _STAGE_DIRS:
            raise WorkspaceError(f"Stage {stage.value!r} has no work directory.")
        directory: pathlib.Path = self.cli_dir / stage.value
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def reset(self, *, logger: logging.Logger | None = None) -> None:
        """Delete the whole work root.

        :param logger: Optional logger.
        :raises WorkspaceError: If the root exists and cannot be deleted.
        """

        if logger is None:
            logger = logging.getLogger("apk_repack")

        if self.root.exists() is False and self.root.is_symlink() is False:
            return

        try:
            if self.root.is_dir() is True and self.root.is_symlink() is False:
                shutil.rmtree(self.root)
            else:
                self.root.unlink()
        except OSError as e:
            raise WorkspaceError(f"Failed to delete work directory {self.root}: {e}") from e
        logger.info(f"apk-repack: cleared work directory {self.root}")

    def delete(
        self,
        directory: pathlib.Path,
        *,
        force: bool = False,
        logger: logging.Logger | None = None,
    ) -> bool:
        """Delete a directory according to the storage policy.

        Forced calls always delete. Other calls only delete in low-storage mode.
        Failures are logged and otherwise ignored: by the time anything is
        cleaned up the artifacts it would protect already exist.

        :param directory: Directory to delete.
        :param force: Delete regardless of low-storage mode.
        :param logger: Optional logger.
        :returns: ``True`` if the directory is gone afterwards.
        """

        if logger is None:
            logger = logging.getLogger("apk_repack")

        if force is False and self.low_storage is False:
            return False
        if directory.exists() is False:
            return True

        try:
            shutil.rmtree(directory)
        except OSError as e:
            logger.error(f"apk-repack: failed to delete directory {directory}: {e}")
            return False

        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"apk-repack: deleted {directory}")
        return True
