"""Patch engine output.

The bytecode/resource patch engine is an external collaborator. All the
pipeline needs from it is, per variant, a directory of replacement resources,
the code containers it generated (base only) and the entries that must stay
stored. :class:`PreparedPatchEngine` reads that output from disk::

    <patch_output>/<apk file name>/resources/          replacement resource tree
    <patch_output>/<apk file name>/dex/*.dex           generated code containers
    <patch_output>/<apk file name>/do_not_compress.txt stored entry paths

``do_not_compress.txt`` lists one entry path per line (``#`` starts a
comment). Without it, the entries stored in the original APK are kept stored.
"""

from dataclasses import dataclass, replace
import logging
import pathlib
import re
from typing import Protocol, Sequence

from apk_repack.archive import ArchiveError, ZipArchive
from apk_repack.variants import GeneratedFile, Variant, VariantBundle, VariantKind


@dataclass(frozen=True, slots=True)
class PatchResult:
    """Outcome of one unit of patch work.

    :ivar name: What was applied.
    :ivar error: Failure description, or ``None`` on success.
    """

    name: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class PatchRun:
    """Patched variants plus the per-patch outcomes.

    :ivar bundle: Variants carrying the patch output.
    :ivar results: One result per unit of patch work.
    """

    bundle: VariantBundle
    results: tuple[PatchResult, ...] = ()

    @property
    def failed(self) -> tuple[PatchResult, ...]:
        return tuple(r for r in self.results if r.ok is False)


class PatchEngine(Protocol):
    def apply(self, bundle: VariantBundle) -> PatchRun: ...


_DEX_RE: re.Pattern[str] = re.compile(r"^classes(?P<n>\d*)\.dex$")


def _dex_index(name: str) -> int | None:
    m = _DEX_RE.match(name)
    if m is None:
        return None
    return int(m.group("n")) if m.group("n") != "" else 1


def read_do_not_compress(path: pathlib.Path) -> tuple[str, ...]:
    """Read a compression-exception list.

    :param path: Text file, one entry path per line.
    :returns: Entry paths in file order, without blanks, comments or duplicates.
    """

    names: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        entry: str = line.split("#", 1)[0].strip()
        if entry != "" and entry not in names:
            names.append(entry)
    return tuple(names)


class PreparedPatchEngine:
    """Loads already-produced patch output and merges extra code containers.

    Each variant directory and each merge file is one unit of work. A unit
    that fails is recorded and skipped; the others still apply.
    """

    def __init__(
        self,
        *,
        patch_output: pathlib.Path | None = None,
        merge_files: Sequence[pathlib.Path] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self._patch_output: pathlib.Path | None = patch_output
        self._merge_files: tuple[pathlib.Path, ...] = tuple(merge_files)
        self._logger: logging.Logger = logger if logger is not None else logging.getLogger("apk_repack")

    def apply(self, bundle: VariantBundle) -> PatchRun:
        results: list[PatchResult] = []
        variants: list[Variant] = []
        for variant in bundle:
            patched, result = self._load_variant(variant)
            if result is not None:
                results.append(result)
            variants.append(patched)

        base: Variant = variants[0]
        if len(self._merge_files) > 0:
            base, merge_results = self._merge(base)
            results.extend(merge_results)

        return PatchRun(
            bundle=VariantBundle(base=base, splits=tuple(variants[1:])),
            results=tuple(results),
        )

    def _load_variant(self, variant: Variant) -> tuple[Variant, PatchResult | None]:
        if self._patch_output is None:
            return variant, None
        directory: pathlib.Path = self._patch_output / variant.name
        if directory.is_dir() is False:
            self._logger.debug(f"apk-repack: no patch output for {variant}")
            return variant, None

        name: str = f"patch output for {variant.name}"
        try:
            resources: pathlib.Path | None = directory / "resources"
            if resources.is_dir() is False:
                resources = None

            dex_files: tuple[GeneratedFile, ...] = ()
            dex_dir: pathlib.Path = directory / "dex"
            if dex_dir.is_dir() is True:
                if variant.kind is not VariantKind.BASE:
                    raise ValueError(f"code containers found for split {variant.name}; only the base takes them")
                dex_files = tuple(
                    GeneratedFile(name=p.name, data=p.read_bytes())
                    for p in sorted(dex_dir.glob("*.dex"))
                    if _dex_index(p.name) is not None
                )

            listing: pathlib.Path = directory / "do_not_compress.txt"
            do_not_compress: tuple[str, ...]
            if listing.is_file() is True:
                do_not_compress = read_do_not_compress(listing)
            elif resources is not None:
                do_not_compress = _surviving_stored_entries(variant.file, resources, logger=self._logger)
            else:
                do_not_compress = ()
        except (OSError, ValueError, ArchiveError) as e:
            self._logger.error(f"apk-repack: {name} failed: {e}")
            return variant, PatchResult(name=name, error=str(e))

        self._logger.info(
            f"apk-repack: loaded {name} (resources={'yes' if resources is not None else 'no'}, "
            f"dex={len(dex_files)}, stored={len(do_not_compress)})"
        )
        patched: Variant = replace(
            variant,
            resources=resources,
            generated_files=variant.generated_files + dex_files,
            do_not_compress=do_not_compress,
        )
        return patched, PatchResult(name=name)

    def _merge(self, base: Variant) -> tuple[Variant, list[PatchResult]]:
        """Append merge files as new ``classesN.dex`` containers of the base.

        :param base: Base variant.
        :returns: Updated base and one result per merge file.
        """

        results: list[PatchResult] = []
        names: list[str] = [gf.name for gf in base.generated_files]
        try:
            with ZipArchive.open(base.file, logger=self._logger) as archive:
                names.extend(archive.names())
        except ArchiveError as e:
            self._logger.error(f"apk-repack: merging failed: {e}")
            return base, [PatchResult(name=f"merge {p.name}", error=str(e)) for p in self._merge_files]

        used: set[int] = set()
        for n in names:
            index: int | None = _dex_index(n)
            if index is not None:
                used.add(index)

        merged: list[GeneratedFile] = []
        next_index: int = max(used, default=0) + 1
        for path in self._merge_files:
            name: str = f"merge {path.name}"
            try:
                data: bytes = path.read_bytes()
            except OSError as e:
                self._logger.error(f"apk-repack: {name} failed: {e}")
                results.append(PatchResult(name=name, error=str(e)))
                continue
            entry: str = "classes.dex" if next_index == 1 else f"classes{next_index}.dex"
            self._logger.info(f"apk-repack: merging {path} as {entry}")
            merged.append(GeneratedFile(name=entry, data=data))
            results.append(PatchResult(name=name))
            next_index += 1

        return replace(base, generated_files=base.generated_files + tuple(merged)), results


def _surviving_stored_entries(
    apk: pathlib.Path,
    resources: pathlib.Path,
    *,
    logger: logging.Logger,
) -> tuple[str, ...]:
    """Stored entries of the original APK that still exist after importing ``resources``.

    Importing replaces every top-level name of the resource tree, so a stored
    entry under such a name survives only if the tree carries the same path.

    :param apk: Original APK.
    :param resources: Replacement resource tree.
    :param logger: Logger.
    :returns: Entry paths to keep stored.
    """

    replaced: set[str] = {child.name for child in resources.iterdir()}
    with ZipArchive.open(apk, logger=logger) as archive:
        stored: list[str] = archive.stored_names()

    kept: list[str] = []
    for name in stored:
        top: str = name.split("/", 1)[0]
        if top not in replaced or (resources / name).is_file() is True:
            kept.append(name)
    return tuple(kept)
