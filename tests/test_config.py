import pathlib

import pytest

from apk_repack.config import ConfigError, DeployMode, resolve_run_config


def test_defaults_derive_keystore_from_base_name(tmp_path: pathlib.Path):
    cfg = resolve_run_config(
        base_apk=pathlib.Path("downloads/app-1.2.apk"),
        output_directory=tmp_path / "out",
        work_directory=tmp_path / "work",
    )

    assert cfg.mode is DeployMode.INSTALL
    assert cfg.mount is False
    assert cfg.deploy is False
    assert cfg.signing.keystore_path == (tmp_path / "out").resolve() / "app-1.2.keystore"
    assert cfg.signing.keystore_path.is_absolute() is True


def test_explicit_keystore_and_mount(tmp_path: pathlib.Path):
    cfg = resolve_run_config(
        base_apk=tmp_path / "base.apk",
        output_directory=tmp_path / "out",
        work_directory=tmp_path / "work",
        keystore_path=tmp_path / "keys" / "my.keystore",
        device="emulator-5554",
        mount=True,
    )

    assert cfg.mount is True
    assert cfg.deploy is True
    assert cfg.signing.keystore_path == (tmp_path / "keys" / "my.keystore").resolve()


def test_config_is_immutable(tmp_path: pathlib.Path):
    cfg = resolve_run_config(
        base_apk=tmp_path / "base.apk",
        output_directory=tmp_path / "out",
        work_directory=tmp_path / "work",
    )
    with pytest.raises(AttributeError):
        cfg.clean = True  # type: ignore[misc]


@pytest.mark.parametrize(
    "overrides",
    [
        {"jobs": 0},
        {"common_name": "  "},
        {"password": "short"},
        {"device": ""},
    ],
)
def test_invalid_values_are_rejected(tmp_path: pathlib.Path, overrides: dict):
    with pytest.raises(ConfigError):
        resolve_run_config(
            base_apk=tmp_path / "base.apk",
            output_directory=tmp_path / "out",
            work_directory=tmp_path / "work",
            **overrides,
        )


def test_output_inside_work_directory_is_rejected(tmp_path: pathlib.Path):
    with pytest.raises(ConfigError):
        resolve_run_config(
            base_apk=tmp_path / "base.apk",
            output_directory=tmp_path / "work" / "out",
            work_directory=tmp_path / "work",
        )


def test_work_directory_containing_cwd_is_rejected(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigError):
        resolve_run_config(
            base_apk=tmp_path / "base.apk",
            output_directory=tmp_path.parent / "out",
            work_directory=tmp_path,
        )
