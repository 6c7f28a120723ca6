"""Package variants.

An application ships as one base APK plus optional split APKs. All variants of
a run belong to the same application and are installed together.
"""

from dataclasses import dataclass
import enum
import pathlib
from typing import Iterable, Iterator


class VariantError(ValueError):
    """Raised when a set of variants does not describe one installable package."""


class VariantKind(enum.Enum):
    """Kind of a variant file."""

    BASE = "base"
    LIBRARY = "library"
    ASSET = "asset"
    LANGUAGE = "language"

    @property
    def is_split(self) -> bool:
        return self is not VariantKind.BASE


@dataclass(frozen=True, slots=True)
class GeneratedFile:
    """A code container (``classes*.dex``) produced by the patch engine.

    :ivar name: Archive entry name.
    :ivar data: File content.
    """

    name: str
    data: bytes


@dataclass(frozen=True, slots=True)
class Variant:
    """One physical APK file of a run.

    :ivar kind: Variant kind.
    :ivar file: The original APK on disk.
    :ivar resources: Optional directory of replacement resources.
    :ivar generated_files: Code containers to write (base only).
    :ivar do_not_compress: Entry paths that must stay stored.
    :ivar package_name: Android package name, when known.
    """

    kind: VariantKind
    file: pathlib.Path
    resources: pathlib.Path | None = None
    generated_files: tuple[GeneratedFile, ...] = ()
    do_not_compress: tuple[str, ...] = ()
    package_name: str | None = None

    def __post_init__(self) -> None:
        if self.kind.is_split is True and len(self.generated_files) > 0:
            raise VariantError(f"Only the base APK can carry code containers, not {self.file.name}.")

    @property
    def name(self) -> str:
        return self.file.name

    def __str__(self) -> str:
        return f"{self.kind.value} ({self.file.name})"


@dataclass(frozen=True, slots=True)
class VariantBundle:
    """The variants of one run: exactly one base and zero or more splits.

    :ivar base: Base variant.
    :ivar splits: Split variants.
    """

    base: Variant
    splits: tuple[Variant, ...] = ()

    def __post_init__(self) -> None:
        if self.base.kind is not VariantKind.BASE:
            raise VariantError(f"Base variant has kind {self.base.kind.value!r}.")
        for split in self.splits:
            if split.kind.is_split is False:
                raise VariantError(f"A run takes exactly one base APK; got another: {split.file}")

        # Stage directories are keyed by file name.
        seen: set[str] = set()
        for variant in self:
            if variant.name in seen:
                raise VariantError(f"Two variants share the file name {variant.name!r}.")
            seen.add(variant.name)

    @classmethod
    def from_variants(cls, variants: Iterable[Variant]) -> "VariantBundle":
        """Group variants into a bundle.

        :param variants: Variants in any order.
        :returns: Bundle preserving the order of the splits.
        :raises VariantError: Unless exactly one variant is a base.
        """

        items: list[Variant] = list(variants)
        bases: list[Variant] = [v for v in items if v.kind is VariantKind.BASE]
        if len(bases) != 1:
            raise VariantError(f"Expected exactly one base APK, got {len(bases)}.")
        return cls(base=bases[0], splits=tuple(v for v in items if v.kind.is_split is True))

    def __iter__(self) -> Iterator[Variant]:
        yield self.base
        yield from self.splits

    def __len__(self) -> int:
        return 1 + len(self.splits)


def bundle_from_paths(
    *,
    base_apk: pathlib.Path,
    library_apk: pathlib.Path | None = None,
    asset_apk: pathlib.Path | None = None,
    language_apk: pathlib.Path | None = None,
    package_name: str | None = None,
) -> VariantBundle:
    """Build a bundle from command line paths.

    Splits come as a complete set (library, asset and language) or not at all.

    :param base_apk: Base APK path.
    :param library_apk: Library split path.
    :param asset_apk: Asset split path.
    :param language_apk: Language split path.
    :param package_name: Optional Android package name, attached to every variant.
    :returns: Variant bundle.
    :raises VariantError: If the split set is incomplete or a file is missing.
    """

    split_paths: dict[VariantKind, pathlib.Path | None] = {
        VariantKind.LIBRARY: library_apk,
        VariantKind.ASSET: asset_apk,
        VariantKind.LANGUAGE: language_apk,
    }
    given: list[VariantKind] = [kind for kind, p in split_paths.items() if p is not None]
    if 0 < len(given) < len(split_paths):
        missing: list[str] = [kind.value for kind, p in split_paths.items() if p is None]
        raise VariantError(f"Split APKs must be given together; missing: {', '.join(missing)}.")

    variants: list[Variant] = [Variant(kind=VariantKind.BASE, file=base_apk, package_name=package_name)]
    for kind in given:
        path: pathlib.Path | None = split_paths[kind]
        if path is not None:
            variants.append(Variant(kind=kind, file=path, package_name=package_name))

    for variant in variants:
        if variant.file.is_file() is False:
            raise VariantError(f"APK does not exist: {variant.file}")

    return VariantBundle.from_variants(variants)
