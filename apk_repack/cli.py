"""Command line interface for apk-repack."""

import argparse
import logging
import pathlib
import sys

from apk_repack.config import (
    DEFAULT_COMMON_NAME,
    DEFAULT_OUTPUT_DIRECTORY,
    DEFAULT_PASSWORD,
    DEFAULT_WORK_DIRECTORY,
    ConfigError,
    DeployMode,
    RunConfig,
    resolve_run_config,
)
from apk_repack.errors import RepackError
from apk_repack.patches import PreparedPatchEngine
from apk_repack.pipeline import PipelineResult, repack
from apk_repack.tools import Installer, installer_for
from apk_repack.variants import VariantBundle, VariantError, bundle_from_paths


_QUIET_LEVELS: tuple[int, ...] = (logging.INFO, logging.WARNING, logging.ERROR)


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the ``apk_repack`` logger on stderr.

    ``-q`` keeps warnings and errors, ``-qq`` only errors; quiet wins over
    verbose. ``-v`` adds tool command lines and archive details. ``-vv`` also
    prefixes every line with the worker thread, which tells ``--jobs``
    workers apart.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = _QUIET_LEVELS[min(quiet, len(_QUIET_LEVELS) - 1)]
    fmt: str = "%(message)s"
    if quiet == 0 and verbose >= 1:
        level = logging.DEBUG
        if verbose >= 2:
            fmt = "[%(threadName)s] %(message)s"

    logger: logging.Logger = logging.getLogger("apk_repack")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="apk-repack",
        description="Write patch output into APKs, then align, sign, output and optionally deploy them.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser("build", help="Repack, align and sign APKs.")
    p_build.add_argument(
        "-a",
        "--base-apk",
        type=pathlib.Path,
        required=True,
        help="The base APK to patch.",
    )
    p_build.add_argument(
        "--library-apk",
        type=pathlib.Path,
        default=None,
        help="Split APK containing native libraries (give all three splits or none).",
    )
    p_build.add_argument(
        "--asset-apk",
        type=pathlib.Path,
        default=None,
        help="Split APK containing assets.",
    )
    p_build.add_argument(
        "--language-apk",
        type=pathlib.Path,
        default=None,
        help="Split APK containing language resources.",
    )
    p_build.add_argument(
        "-o",
        "--out",
        type=pathlib.Path,
        default=DEFAULT_OUTPUT_DIRECTORY,
        help="Output directory.",
    )
    p_build.add_argument(
        "--patch-output",
        type=pathlib.Path,
        default=None,
        help="Directory with patch engine output, one subdirectory per APK file name.",
    )
    p_build.add_argument(
        "-m",
        "--merge",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Dex file to add to the base APK. Can be given multiple times.",
    )
    p_build.add_argument(
        "--package-name",
        type=str,
        default=None,
        help="Android package name of the app (required for --mount deploys).",
    )
    p_build.add_argument(
        "--cn",
        type=str,
        default=DEFAULT_COMMON_NAME,
        help="Common name of the signing certificate.",
    )
    p_build.add_argument(
        "-p",
        "--password",
        type=str,
        default=DEFAULT_PASSWORD,
        help="Keystore password.",
    )
    p_build.add_argument(
        "--keystore",
        type=pathlib.Path,
        default=None,
        help="Keystore path. Defaults to <out>/<base apk name>.keystore.",
    )
    p_build.add_argument(
        "-t",
        "--temp-dir",
        type=pathlib.Path,
        default=DEFAULT_WORK_DIRECTORY,
        help="Temporary work directory. It is always cleared before a run.",
    )
    p_build.add_argument(
        "-c",
        "--clean",
        action="store_true",
        help="Delete the work directory after the run (and the outputs, if they were deployed).",
    )
    p_build.add_argument(
        "--low-storage",
        action="store_true",
        help="Delete intermediate files as soon as the next stage consumed them.",
    )
    p_build.add_argument(
        "-d",
        "--deploy-on",
        type=str,
        default=None,
        help="Deploy to the adb device with this serial.",
    )
    p_build.add_argument(
        "--mount",
        action="store_true",
        help="Mount the patched base APK over the installed app instead of installing (root, no signing).",
    )
    p_build.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=1,
        help="Process up to this many APKs in parallel within a stage.",
    )
    _add_logging_args(p_build)

    p_uninstall = subparsers.add_parser("uninstall", help="Uninstall (or unmount) a package from a device.")
    p_uninstall.add_argument("package", type=str, help="Android package name.")
    p_uninstall.add_argument(
        "-d",
        "--deploy-on",
        type=str,
        required=True,
        help="The adb device serial.",
    )
    p_uninstall.add_argument(
        "--mount",
        action="store_true",
        help="Unmount a mounted APK instead of uninstalling.",
    )
    _add_logging_args(p_uninstall)

    return parser


def _build(ns: argparse.Namespace, logger: logging.Logger) -> int:
    bundle: VariantBundle = bundle_from_paths(
        base_apk=ns.base_apk,
        library_apk=ns.library_apk,
        asset_apk=ns.asset_apk,
        language_apk=ns.language_apk,
        package_name=ns.package_name,
    )
    config: RunConfig = resolve_run_config(
        base_apk=ns.base_apk,
        output_directory=ns.out,
        work_directory=ns.temp_dir,
        device=ns.deploy_on,
        mount=ns.mount,
        low_storage=ns.low_storage,
        clean=ns.clean,
        common_name=ns.cn,
        password=ns.password,
        keystore_path=ns.keystore,
        jobs=ns.jobs,
    )
    engine: PreparedPatchEngine = PreparedPatchEngine(
        patch_output=ns.patch_output,
        merge_files=ns.merge,
        logger=logger,
    )

    result: PipelineResult = repack(bundle, config=config, engine=engine, logger=logger)
    if result.ok is False:
        logger.error(f"apk-repack: {len(result.failed_patches)} patches failed")
        return 1
    logger.info("apk-repack: done")
    return 0


def _uninstall(ns: argparse.Namespace, logger: logging.Logger) -> int:
    mode: DeployMode = DeployMode.MOUNT if ns.mount is True else DeployMode.INSTALL
    installer: Installer = installer_for(device=ns.deploy_on, mode=mode, logger=logger)
    installer.uninstall(ns.package)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the apk-repack CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        if ns.command == "build":
            return _build(ns, logger)
        if ns.command == "uninstall":
            return _uninstall(ns, logger)
    except (RepackError, ConfigError, VariantError) as e:
        logger.error(f"apk-repack: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
