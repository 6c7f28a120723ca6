"""Assembly pipeline.

Each variant moves strictly forward through::

    PATCHED -> ALIGNED -> SIGNED -> OUTPUT -> INSTALLED -> CLEANED

- PATCHED: copy the original APK into ``cli/patched/`` and graft the patch
  output into the copy.
- ALIGNED: ``zipalign`` into ``cli/aligned/``.
- SIGNED: sign into ``cli/signed/`` with one identity for all variants.
  Skipped in mount mode.
- OUTPUT: copy into the output directory.
- INSTALLED: base and splits go to the device in one call, once every
  variant reached OUTPUT. Only when deploying.
- CLEANED: work root (and deployed outputs) removed. Only when cleaning.

Every stage is a barrier: all variants finish it before the next one starts,
which is what lets low-storage mode delete a stage directory right after the
following stage consumed it.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
import logging
import pathlib
import shutil
import threading
import time
from typing import Callable, Sequence, TypeVar

from apk_repack.archive import ZipArchive
from apk_repack.config import RunConfig
from apk_repack.errors import RepackError
from apk_repack.patches import PatchEngine, PatchResult, PatchRun
from apk_repack.tools import Aligner, DeviceApk, Installer, Signer, Toolchain, default_toolchain
from apk_repack.variants import Variant, VariantBundle, VariantKind
from apk_repack.workspace import Stage, Workspace


class PipelineError(RepackError):
    """Raised when the pipeline is driven into an invalid state."""


_NEXT: dict[Stage | None, frozenset[Stage]] = {
    None: frozenset({Stage.PATCHED}),
    Stage.PATCHED: frozenset({Stage.ALIGNED}),
    Stage.ALIGNED: frozenset({Stage.SIGNED}),
    Stage.SIGNED: frozenset({Stage.OUTPUT}),
    Stage.OUTPUT: frozenset({Stage.INSTALLED, Stage.CLEANED}),
    Stage.INSTALLED: frozenset({Stage.CLEANED}),
    Stage.CLEANED: frozenset(),
}


class StageTracker:
    """Records the last stage each variant reached and rejects invalid moves.

    In mount mode SIGNED does not exist: ALIGNED moves straight to OUTPUT.
    """

    def __init__(self, *, mount: bool) -> None:
        self._mount: bool = mount
        self._stages: dict[str, Stage] = {}
        self._lock: threading.Lock = threading.Lock()

    def advance(self, name: str, stage: Stage) -> None:
        """Move a variant to ``stage``.

        :param name: Variant file name.
        :param stage: Stage just reached.
        :raises PipelineError: On a backward move or a skipped stage.
        """

        with self._lock:
            current: Stage | None = self._stages.get(name)
            allowed: frozenset[Stage] = _NEXT[current]
            if current is Stage.ALIGNED and self._mount is True:
                allowed = frozenset({Stage.OUTPUT})
            if stage not in allowed:
                was: str = current.value if current is not None else "start"
                raise PipelineError(f"{name}: cannot move from {was} to {stage.value}")
            self._stages[name] = stage

    def stage_of(self, name: str) -> Stage | None:
        with self._lock:
            return self._stages.get(name)

    def snapshot(self) -> dict[str, Stage]:
        with self._lock:
            return dict(self._stages)


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Outcome of a run.

    :ivar outputs: Final APKs in variant order (may be deleted again when cleaning after a deploy).
    :ivar stages: Last stage reached per variant file name.
    :ivar installed: Whether a device install happened.
    :ivar cleaned: Whether the work root was removed.
    :ivar failed_patches: Patch work that failed.
    """

    outputs: tuple[pathlib.Path, ...]
    stages: dict[str, Stage] = field(default_factory=dict)
    installed: bool = False
    cleaned: bool = False
    failed_patches: tuple[PatchResult, ...] = ()

    @property
    def ok(self) -> bool:
        return len(self.failed_patches) == 0


_T = TypeVar("_T")
_R = TypeVar("_R")


def _map(fn: Callable[[_T], _R], items: Sequence[_T], *, jobs: int) -> list[_R]:
    """Apply ``fn`` to every item, on a thread pool when ``jobs > 1``.

    Results keep the order of ``items``; the first exception propagates.
    """

    if jobs <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=min(jobs, len(items)), thread_name_prefix="apk-repack") as pool:
        return list(pool.map(fn, items))


def write_patched(variant: Variant, *, workspace: Workspace, logger: logging.Logger) -> pathlib.Path:
    """Write the patch output of a variant into a copy of its original APK.

    :param variant: Variant carrying patch output.
    :param workspace: Work directory layout.
    :param logger: Logger.
    :returns: Patched APK in ``cli/patched/``.
    :raises PipelineError: If the original APK is missing.
    :raises ArchiveError: If the copy cannot be modified.
    """

    if variant.file.is_file() is False:
        raise PipelineError(f"APK does not exist: {variant.file}")

    patched: pathlib.Path = workspace.stage_dir(Stage.PATCHED) / variant.name
    shutil.copyfile(variant.file, patched)

    with ZipArchive.open(patched, logger=logger) as archive:
        if variant.resources is not None:
            logger.info(f"apk-repack: writing resources to {variant}")
            archive.import_tree(variant.resources)
            archive.mark_stored(*variant.do_not_compress)

        if variant.kind is VariantKind.BASE and len(variant.generated_files) > 0:
            logger.info(f"apk-repack: writing {len(variant.generated_files)} dex files to {variant}")
            for generated in variant.generated_files:
                archive.write_entry(generated.name, generated.data)

    return patched


def align(file: pathlib.Path, *, workspace: Workspace, aligner: Aligner, logger: logging.Logger) -> pathlib.Path:
    """Align an APK into ``cli/aligned/``; the input is left untouched."""

    logger.info(f"apk-repack: aligning {file.name}")
    aligned: pathlib.Path = workspace.stage_dir(Stage.ALIGNED) / file.name
    aligner.align(file, aligned)
    return aligned


def sign(file: pathlib.Path, *, workspace: Workspace, signer: Signer, logger: logging.Logger) -> pathlib.Path:
    """Sign an APK into ``cli/signed/``."""

    logger.info(f"apk-repack: signing {file.name}")
    signed: pathlib.Path = workspace.stage_dir(Stage.SIGNED) / file.name
    signer.sign(file, signed)
    return signed


def sign_all(
    files: Sequence[pathlib.Path],
    *,
    workspace: Workspace,
    signer: Signer | None,
    mount: bool,
    logger: logging.Logger,
    jobs: int = 1,
) -> list[pathlib.Path]:
    """Sign every file with one shared signer.

    Under mount mode nothing is signed and the files are returned unchanged.

    :raises PipelineError: If signing is needed and there is no signer.
    """

    if mount is True:
        logger.info("apk-repack: mount mode; skipping signing")
        return list(files)
    if signer is None:
        raise PipelineError("A signer is required unless mounting.")
    return _map(lambda file: sign(file, workspace=workspace, signer=signer, logger=logger), files, jobs=jobs)


def copy_to_output(file: pathlib.Path, *, output_directory: pathlib.Path, logger: logging.Logger) -> pathlib.Path:
    """Copy an APK into the output directory, replacing a previous copy.

    :param file: Final APK.
    :param output_directory: Output directory (created if needed).
    :param logger: Logger.
    :returns: Output path.
    """

    logger.info(f"apk-repack: copying {file.name} to output directory")
    output_directory.mkdir(parents=True, exist_ok=True)
    target: pathlib.Path = output_directory / file.name
    shutil.copyfile(file, target)
    return target


def install(
    outputs: Sequence[tuple[pathlib.Path, Variant]],
    *,
    installer: Installer,
    logger: logging.Logger,
) -> None:
    """Install every output on the device in one operation.

    :param outputs: Output APK paired with its variant.
    :param installer: Device installer.
    :param logger: Logger.
    :raises PipelineError: Unless exactly one output is a base APK.
    """

    bases: list[DeviceApk] = []
    splits: list[DeviceApk] = []
    for path, variant in outputs:
        apk: DeviceApk = DeviceApk(path=path, package_name=variant.package_name)
        if variant.kind is VariantKind.BASE:
            bases.append(apk)
        else:
            splits.append(apk)
    if len(bases) != 1:
        raise PipelineError(f"Install needs exactly one base APK, got {len(bases)}.")

    logger.info(f"apk-repack: deploying {1 + len(splits)} APKs")
    installer.install(bases[0], splits)


def clean_up(
    outputs: Sequence[pathlib.Path],
    *,
    config: RunConfig,
    workspace: Workspace,
    deployed: bool,
    logger: logging.Logger,
) -> bool:
    """Remove the work root, and the outputs when they were already deployed.

    :param outputs: Output APKs.
    :param config: Run configuration.
    :param workspace: Work directory layout.
    :param deployed: Whether the outputs were installed to a device.
    :param logger: Logger.
    :returns: ``True`` if cleaning was requested (and attempted).
    """

    if config.clean is False:
        return False

    workspace.delete(workspace.root, force=True, logger=logger)
    if deployed is True:
        failed: list[pathlib.Path] = []
        for path in outputs:
            try:
                path.unlink()
            except OSError:
                failed.append(path)
        if len(failed) > 0:
            logger.error(f"apk-repack: failed to delete some output files: {', '.join(str(p) for p in failed)}")
    return True


def run_pipeline(
    bundle: VariantBundle,
    *,
    config: RunConfig,
    workspace: Workspace,
    toolchain: Toolchain,
    logger: logging.Logger | None = None,
) -> PipelineResult:
    """Drive every variant of a bundle through all stages.

    The workspace is expected to be fresh (see :func:`repack`).

    :param bundle: Variants carrying patch output.
    :param config: Run configuration.
    :param workspace: Work directory layout.
    :param toolchain: Aligner, signer and installer.
    :param logger: Optional logger.
    :returns: Pipeline result.
    :raises PipelineError: If the toolchain does not match the configuration.
    """

    if logger is None:
        logger = logging.getLogger("apk_repack")
    if config.mount is False and toolchain.signer is None:
        raise PipelineError("A signer is required unless mounting.")
    if config.deploy is True and toolchain.installer is None:
        raise PipelineError(f"An installer is required to deploy to {config.device}.")

    tracker: StageTracker = StageTracker(mount=config.mount)
    variants: list[Variant] = list(bundle)
    jobs: int = config.jobs

    def timed(label: str, t0: float) -> None:
        logger.info(f"apk-repack: {label} {len(variants)} APKs in {time.perf_counter() - t0:.2f}s")

    def patch_one(variant: Variant) -> pathlib.Path:
        path: pathlib.Path = write_patched(variant, workspace=workspace, logger=logger)
        tracker.advance(variant.name, Stage.PATCHED)
        return path

    def align_one(item: tuple[pathlib.Path, Variant]) -> pathlib.Path:
        path: pathlib.Path = align(item[0], workspace=workspace, aligner=toolchain.aligner, logger=logger)
        tracker.advance(item[1].name, Stage.ALIGNED)
        return path

    def output_one(item: tuple[pathlib.Path, Variant]) -> pathlib.Path:
        path: pathlib.Path = copy_to_output(item[0], output_directory=config.output_directory, logger=logger)
        tracker.advance(item[1].name, Stage.OUTPUT)
        return path

    t0: float = time.perf_counter()
    patched: list[pathlib.Path] = _map(patch_one, variants, jobs=jobs)
    timed("patched", t0)

    t0 = time.perf_counter()
    aligned: list[pathlib.Path] = _map(align_one, list(zip(patched, variants)), jobs=jobs)
    timed("aligned", t0)
    workspace.delete(workspace.patched_dir, logger=logger)

    t0 = time.perf_counter()
    final: list[pathlib.Path] = sign_all(
        aligned,
        workspace=workspace,
        signer=toolchain.signer,
        mount=config.mount,
        logger=logger,
        jobs=jobs,
    )
    if config.mount is False:
        for variant in variants:
            tracker.advance(variant.name, Stage.SIGNED)
        timed("signed", t0)
        workspace.delete(workspace.aligned_dir, logger=logger)

    outputs: list[pathlib.Path] = _map(output_one, list(zip(final, variants)), jobs=jobs)
    if config.mount is True:
        workspace.delete(workspace.aligned_dir, logger=logger)
    else:
        workspace.delete(workspace.signed_dir, logger=logger)

    installed: bool = False
    if config.deploy is True and toolchain.installer is not None:
        t0 = time.perf_counter()
        install(list(zip(outputs, variants)), installer=toolchain.installer, logger=logger)
        for variant in variants:
            tracker.advance(variant.name, Stage.INSTALLED)
        installed = True
        timed("deployed", t0)

    cleaned: bool = clean_up(outputs, config=config, workspace=workspace, deployed=installed, logger=logger)
    if cleaned is True:
        for variant in variants:
            tracker.advance(variant.name, Stage.CLEANED)

    return PipelineResult(
        outputs=tuple(outputs),
        stages=tracker.snapshot(),
        installed=installed,
        cleaned=cleaned,
    )


def repack(
    bundle: VariantBundle,
    *,
    config: RunConfig,
    engine: PatchEngine,
    toolchain: Toolchain | None = None,
    logger: logging.Logger | None = None,
) -> PipelineResult:
    """Run a whole repack: reset the workspace, patch, then assemble.

    Patch failures are logged and reported in the result; they do not stop
    the run.

    :param bundle: Original variants.
    :param config: Run configuration.
    :param engine: Patch engine.
    :param toolchain: Optional collaborators (defaults to the SDK tools).
    :param logger: Optional logger.
    :returns: Pipeline result; ``ok`` is false if any patch failed.
    :raises WorkspaceError: If the work directory cannot be cleared.
    """

    if logger is None:
        logger = logging.getLogger("apk_repack")

    t_total0: float = time.perf_counter()
    workspace: Workspace = Workspace(root=config.work_directory, low_storage=config.low_storage)
    workspace.reset(logger=logger)

    logger.info(f"apk-repack: base={bundle.base.file}")
    for split in bundle.splits:
        logger.info(f"apk-repack: split={split.file} ({split.kind.value})")
    logger.info(f"apk-repack: output={config.output_directory}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"apk-repack: config={config}")

    patch_run: PatchRun = engine.apply(bundle)
    for result in patch_run.results:
        if result.ok is True:
            logger.info(f"apk-repack: {result.name} succeeded")
        else:
            logger.error(f"apk-repack: {result.name} failed:\n{result.error}")

    if toolchain is None:
        toolchain = default_toolchain(config, logger=logger)

    result: PipelineResult = run_pipeline(
        patch_run.bundle,
        config=config,
        workspace=workspace,
        toolchain=toolchain,
        logger=logger,
    )
    logger.info(f"apk-repack: finished in {time.perf_counter() - t_total0:.2f}s")
    return replace(result, failed_patches=patch_run.failed)
