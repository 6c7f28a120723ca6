import logging
import pathlib
import shutil
import zipfile

import pytest

from apk_repack import workspace as workspace_module
from apk_repack.config import RunConfig, resolve_run_config
from apk_repack.patches import PatchResult, PatchRun
from apk_repack.pipeline import (
    PipelineError,
    StageTracker,
    copy_to_output,
    repack,
    sign_all,
    run_pipeline,
    write_patched,
)
from apk_repack.tools import DeviceApk, Toolchain
from apk_repack.variants import GeneratedFile, Variant, VariantBundle, VariantKind
from apk_repack.workspace import Stage, Workspace, WorkspaceError


def _make_apk(path: pathlib.Path, entries: dict[str, bytes] | None = None) -> pathlib.Path:
    if entries is None:
        entries = {"AndroidManifest.xml": b"<manifest/>", "res/values/strings.xml": b"<strings/>"}
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


class FakeAligner:
    def __init__(self) -> None:
        self.calls: list[pathlib.Path] = []

    def align(self, src: pathlib.Path, dst: pathlib.Path) -> None:
        self.calls.append(src)
        shutil.copyfile(src, dst)


class FakeSigner:
    def __init__(self, on_sign=None) -> None:
        self.calls: list[pathlib.Path] = []
        self._on_sign = on_sign

    def sign(self, src: pathlib.Path, dst: pathlib.Path) -> None:
        if self._on_sign is not None:
            self._on_sign()
        self.calls.append(src)
        dst.write_bytes(src.read_bytes() + b"SIGNED")


class FakeInstaller:
    def __init__(self, on_install=None) -> None:
        self.installs: list[tuple[DeviceApk, list[DeviceApk]]] = []
        self._on_install = on_install

    def install(self, base: DeviceApk, splits) -> None:
        if self._on_install is not None:
            self._on_install(base, list(splits))
        self.installs.append((base, list(splits)))

    def uninstall(self, package_name: str) -> None:
        raise AssertionError("not used")


class PassThroughEngine:
    def __init__(self, results: tuple[PatchResult, ...] = ()) -> None:
        self.applied: list[VariantBundle] = []
        self._results = results

    def apply(self, bundle: VariantBundle) -> PatchRun:
        self.applied.append(bundle)
        return PatchRun(bundle=bundle, results=self._results)


def _config(tmp_path: pathlib.Path, **overrides) -> RunConfig:
    return resolve_run_config(
        base_apk=tmp_path / "in" / "base.apk",
        output_directory=tmp_path / "out",
        work_directory=tmp_path / "work",
        **overrides,
    )


def _bundle(tmp_path: pathlib.Path, *, splits: bool = False) -> VariantBundle:
    src = tmp_path / "in"
    src.mkdir(exist_ok=True)
    base = Variant(
        kind=VariantKind.BASE,
        file=_make_apk(src / "base.apk"),
        package_name="com.example.app",
    )
    if splits is False:
        return VariantBundle(base=base)
    return VariantBundle(
        base=base,
        splits=(
            Variant(kind=VariantKind.LIBRARY, file=_make_apk(src / "split_lib.apk")),
            Variant(kind=VariantKind.ASSET, file=_make_apk(src / "split_asset.apk")),
            Variant(kind=VariantKind.LANGUAGE, file=_make_apk(src / "split_lang.apk")),
        ),
    )


def _files(directory: pathlib.Path) -> list[str]:
    if directory.exists() is False:
        return []
    return sorted(p.name for p in directory.iterdir() if p.is_file())


def test_scenario_base_only_keeps_intermediates(tmp_path: pathlib.Path):
    config = _config(tmp_path)
    ws = Workspace(root=config.work_directory, low_storage=config.low_storage)
    toolchain = Toolchain(aligner=FakeAligner(), signer=FakeSigner(), installer=None)

    result = run_pipeline(_bundle(tmp_path), config=config, workspace=ws, toolchain=toolchain)

    assert _files(ws.patched_dir) == ["base.apk"]
    assert _files(ws.aligned_dir) == ["base.apk"]
    assert _files(ws.signed_dir) == ["base.apk"]
    assert _files(config.output_directory) == ["base.apk"]
    assert (config.output_directory / "base.apk").read_bytes().endswith(b"SIGNED") is True
    assert ws.root.is_dir() is True
    assert result.outputs == (config.output_directory / "base.apk",)
    assert result.stages == {"base.apk": Stage.OUTPUT}
    assert result.installed is False
    assert result.cleaned is False


def test_scenario_mount_skips_signing_and_installs_once(tmp_path: pathlib.Path):
    config = _config(tmp_path, device="emulator-5554", mount=True)
    ws = Workspace(root=config.work_directory)
    installer = FakeInstaller()
    toolchain = Toolchain(aligner=FakeAligner(), signer=None, installer=installer)

    result = run_pipeline(_bundle(tmp_path, splits=True), config=config, workspace=ws, toolchain=toolchain)

    assert ws.signed_dir.exists() is False
    assert _files(config.output_directory) == ["base.apk", "split_asset.apk", "split_lang.apk", "split_lib.apk"]
    for name in _files(config.output_directory):
        assert (config.output_directory / name).read_bytes() == (ws.aligned_dir / name).read_bytes()

    assert len(installer.installs) == 1
    base, splits = installer.installs[0]
    assert base == DeviceApk(config.output_directory / "base.apk", package_name="com.example.app")
    assert [s.path.name for s in splits] == ["split_lib.apk", "split_asset.apk", "split_lang.apk"]
    assert set(result.stages.values()) == {Stage.INSTALLED}


def test_scenario_low_storage_clean_deploy(tmp_path: pathlib.Path):
    config = _config(tmp_path, device="emulator-5554", low_storage=True, clean=True)
    ws = Workspace(root=config.work_directory, low_storage=True)
    seen: dict[str, bool] = {}

    def on_sign() -> None:
        seen["patched_gone_before_sign"] = ws.patched_dir.exists() is False

    def on_install(base: DeviceApk, splits: list[DeviceApk]) -> None:
        seen["aligned_gone"] = ws.aligned_dir.exists() is False
        seen["signed_gone"] = ws.signed_dir.exists() is False
        seen["outputs_ready"] = all(apk.path.is_file() for apk in [base, *splits])

    toolchain = Toolchain(
        aligner=FakeAligner(),
        signer=FakeSigner(on_sign=on_sign),
        installer=FakeInstaller(on_install=on_install),
    )

    result = run_pipeline(_bundle(tmp_path, splits=True), config=config, workspace=ws, toolchain=toolchain)

    assert seen == {
        "patched_gone_before_sign": True,
        "aligned_gone": True,
        "signed_gone": True,
        "outputs_ready": True,
    }
    assert ws.root.exists() is False
    assert all(p.exists() is False for p in result.outputs)
    assert result.installed is True
    assert result.cleaned is True
    assert set(result.stages.values()) == {Stage.CLEANED}


def test_low_storage_mount_copies_aligned_before_deleting_it(tmp_path: pathlib.Path):
    config = _config(tmp_path, mount=True, low_storage=True)
    ws = Workspace(root=config.work_directory, low_storage=True)
    toolchain = Toolchain(aligner=FakeAligner(), signer=None, installer=None)

    run_pipeline(_bundle(tmp_path), config=config, workspace=ws, toolchain=toolchain)

    assert _files(config.output_directory) == ["base.apk"]
    assert ws.aligned_dir.exists() is False
    assert ws.patched_dir.exists() is False


def test_clean_without_deploy_keeps_outputs(tmp_path: pathlib.Path):
    config = _config(tmp_path, clean=True)
    ws = Workspace(root=config.work_directory)
    toolchain = Toolchain(aligner=FakeAligner(), signer=FakeSigner(), installer=None)

    result = run_pipeline(_bundle(tmp_path), config=config, workspace=ws, toolchain=toolchain)

    assert ws.root.exists() is False
    assert all(p.is_file() for p in result.outputs)


def test_parallel_jobs_keep_variant_order(tmp_path: pathlib.Path):
    config = _config(tmp_path, jobs=4)
    ws = Workspace(root=config.work_directory)
    toolchain = Toolchain(aligner=FakeAligner(), signer=FakeSigner(), installer=None)

    result = run_pipeline(_bundle(tmp_path, splits=True), config=config, workspace=ws, toolchain=toolchain)

    assert [p.name for p in result.outputs] == ["base.apk", "split_lib.apk", "split_asset.apk", "split_lang.apk"]


def test_missing_signer_is_rejected(tmp_path: pathlib.Path):
    config = _config(tmp_path)
    toolchain = Toolchain(aligner=FakeAligner(), signer=None, installer=None)
    with pytest.raises(PipelineError):
        run_pipeline(_bundle(tmp_path), config=config, workspace=Workspace(root=config.work_directory), toolchain=toolchain)


def test_write_patched_grafts_resources_and_dex(tmp_path: pathlib.Path):
    src = tmp_path / "in"
    src.mkdir()
    original = _make_apk(
        src / "base.apk",
        {"classes.dex": b"old", "res/values/strings.xml": b"<old/>", "resources.arsc": b"arsc"},
    )
    resources = tmp_path / "resources"
    (resources / "res" / "values").mkdir(parents=True)
    (resources / "res" / "values" / "strings.xml").write_bytes(b"<new/>")
    (resources / "resources.arsc").write_bytes(b"new arsc")
    original_bytes = original.read_bytes()

    variant = Variant(
        kind=VariantKind.BASE,
        file=original,
        resources=resources,
        generated_files=(GeneratedFile("classes.dex", b"new"), GeneratedFile("classes2.dex", b"extra")),
        do_not_compress=("resources.arsc",),
    )
    ws = Workspace(root=tmp_path / "work")
    patched = write_patched(variant, workspace=ws, logger=logging.getLogger("test"))

    assert patched == ws.patched_dir / "base.apk"
    assert original.read_bytes() == original_bytes
    with zipfile.ZipFile(patched) as zf:
        assert zf.read("res/values/strings.xml") == b"<new/>"
        assert zf.read("classes.dex") == b"new"
        assert zf.read("classes2.dex") == b"extra"
        assert zf.getinfo("resources.arsc").compress_type == zipfile.ZIP_STORED
        assert zf.read("resources.arsc") == b"new arsc"


def test_write_patched_missing_apk_is_fatal(tmp_path: pathlib.Path):
    variant = Variant(kind=VariantKind.BASE, file=tmp_path / "missing.apk")
    with pytest.raises(PipelineError):
        write_patched(variant, workspace=Workspace(root=tmp_path / "work"), logger=logging.getLogger("test"))


def test_copy_to_output_is_idempotent(tmp_path: pathlib.Path):
    signed = tmp_path / "signed.apk"
    signed.write_bytes(b"signed content")
    out = tmp_path / "out"
    logger = logging.getLogger("test")

    first = copy_to_output(signed, output_directory=out, logger=logger)
    first_bytes = first.read_bytes()
    second = copy_to_output(signed, output_directory=out, logger=logger)

    assert first == second
    assert second.read_bytes() == first_bytes == b"signed content"


def test_stage_tracker_rejects_skips_and_backward_moves():
    tracker = StageTracker(mount=False)
    tracker.advance("base.apk", Stage.PATCHED)
    tracker.advance("base.apk", Stage.ALIGNED)
    with pytest.raises(PipelineError):
        tracker.advance("base.apk", Stage.OUTPUT)
    tracker.advance("base.apk", Stage.SIGNED)
    with pytest.raises(PipelineError):
        tracker.advance("base.apk", Stage.PATCHED)
    tracker.advance("base.apk", Stage.OUTPUT)
    tracker.advance("base.apk", Stage.CLEANED)
    assert tracker.stage_of("base.apk") is Stage.CLEANED


def test_stage_tracker_mount_has_no_signed_stage():
    tracker = StageTracker(mount=True)
    tracker.advance("base.apk", Stage.PATCHED)
    tracker.advance("base.apk", Stage.ALIGNED)
    with pytest.raises(PipelineError):
        tracker.advance("base.apk", Stage.SIGNED)
    tracker.advance("base.apk", Stage.OUTPUT)
    tracker.advance("base.apk", Stage.INSTALLED)


def test_repack_resets_stale_work_directory(tmp_path: pathlib.Path):
    config = _config(tmp_path)
    stale = config.work_directory / "cli" / "signed" / "stale.apk"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"old")

    toolchain = Toolchain(aligner=FakeAligner(), signer=FakeSigner(), installer=None)
    result = repack(_bundle(tmp_path), config=config, engine=PassThroughEngine(), toolchain=toolchain)

    assert stale.exists() is False
    assert result.ok is True


def test_repack_reports_patch_failures_but_finishes(tmp_path: pathlib.Path):
    config = _config(tmp_path)
    engine = PassThroughEngine(results=(PatchResult("good"), PatchResult("bad", error="boom")))
    toolchain = Toolchain(aligner=FakeAligner(), signer=FakeSigner(), installer=None)

    result = repack(_bundle(tmp_path), config=config, engine=engine, toolchain=toolchain)

    assert result.ok is False
    assert [r.name for r in result.failed_patches] == ["bad"]
    assert (config.output_directory / "base.apk").is_file() is True


def test_repack_aborts_before_patching_when_reset_fails(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    config = _config(tmp_path)
    config.work_directory.mkdir(parents=True)
    engine = PassThroughEngine()

    def boom(path, *args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(workspace_module.shutil, "rmtree", boom)
    with pytest.raises(WorkspaceError):
        repack(
            _bundle(tmp_path),
            config=config,
            engine=engine,
            toolchain=Toolchain(aligner=FakeAligner(), signer=FakeSigner(), installer=None),
        )
    assert engine.applied == []


def test_sign_all_shares_one_signer_and_skips_under_mount(tmp_path: pathlib.Path):
    files = []
    for name in ("base.apk", "split_lib.apk"):
        path = tmp_path / name
        path.write_bytes(b"aligned")
        files.append(path)
    ws = Workspace(root=tmp_path / "work")
    signer = FakeSigner()
    logger = logging.getLogger("test")

    assert sign_all(files, workspace=ws, signer=None, mount=True, logger=logger) == files
    assert ws.signed_dir.exists() is False

    signed = sign_all(files, workspace=ws, signer=signer, mount=False, logger=logger, jobs=2)
    assert signed == [ws.signed_dir / "base.apk", ws.signed_dir / "split_lib.apk"]
    assert sorted(signer.calls) == sorted(files)

    with pytest.raises(PipelineError):
        sign_all(files, workspace=ws, signer=None, mount=False, logger=logger)
