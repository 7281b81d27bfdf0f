# -*- encoding: utf-8 -*-
"""
test_config.py - open options, migration plans and TOML settings.
"""

import pytest

from idbstore import IndexedDBError, MemoryEngine, OpenOptions, Orchestrator, Settings, load_settings, ui_log


def noop(context):
    pass


def test_open_options_defaults():
    options = OpenOptions().validate()
    assert options.version == 1
    assert options.plan(0, 1) == []


@pytest.mark.parametrize("version", [0, -1, 1.5, "2", True, None])
def test_open_options_bad_version(version):
    with pytest.raises(ValueError):
        OpenOptions(version=version).validate()


def test_open_options_bad_migration():
    with pytest.raises(TypeError):
        OpenOptions(migration=[noop]).validate()
    with pytest.raises(ValueError):
        OpenOptions(migration={0: noop}).validate()
    with pytest.raises(ValueError):
        OpenOptions(migration={"1": noop}).validate()
    with pytest.raises(TypeError):
        OpenOptions(migration={1: "not callable"}).validate()
    with pytest.raises(TypeError):
        OpenOptions(on_blocked=42).validate()


def test_plan_orders_and_windows_versions():
    def v1(context): pass
    def v2(context): pass
    def v4(context): pass

    options = OpenOptions(version=4, migration={4: v4, 1: v1, 2: v2}).validate()
    assert options.plan(0, 4) == [(1, v1), (2, v2), (4, v4)]
    assert options.plan(1, 4) == [(2, v2), (4, v4)]
    assert options.plan(2, 3) == []


def test_load_settings(tmp_path):
    path = tmp_path / "pyscript.toml"
    path.write_text(
        'name = "page"\n'
        "[idbstore]\n"
        'log_level = "debug"\n'
        'engine = "memory"\n'
        "default_version = 3\n"
        'app_title = "demo"\n',
        encoding="utf-8",
    )
    settings = load_settings(path)
    assert settings.log_level == "debug"
    assert settings.default_version == 3
    assert settings.extra == {"app_title": "demo"}
    assert isinstance(settings.make_engine(), MemoryEngine)

    settings.apply()
    assert ui_log.get_level() == "debug"


def test_load_settings_without_table(tmp_path):
    path = tmp_path / "empty.toml"
    path.write_text('name = "page"\n', encoding="utf-8")
    assert load_settings(path) == Settings()


def test_load_settings_invalid(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text('idbstore = "flat"\n', encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(path)
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.toml")


@pytest.mark.parametrize(
    "table",
    [{"log_level": "loud"}, {"engine": "sqlite"}, {"default_version": 0}],
)
def test_settings_validation(table):
    with pytest.raises(ValueError):
        Settings.from_dict(table)


def test_browser_engine_needs_pyodide():
    with pytest.raises(IndexedDBError):
        Settings().make_engine()


async def test_default_version_drives_opens(tmp_path):
    path = tmp_path / "pyscript.toml"
    path.write_text('[idbstore]\nengine = "memory"\ndefault_version = 2\n', encoding="utf-8")
    orchestrator = load_settings(path).make_orchestrator()
    assert isinstance(orchestrator.engine, MemoryEngine)

    ran = []
    migration = {1: lambda ctx: ran.append(1), 2: lambda ctx: ran.append(2)}
    conn = await orchestrator.open("configured", migration=migration)
    assert conn.version == 2
    assert ran == [1, 2]
    conn.close()

    # an explicit version still wins
    conn = await orchestrator.open("pinned", version=1, migration=migration)
    assert conn.version == 1
    conn.close()


def test_make_orchestrator_uses_given_engine():
    engine = MemoryEngine()
    orchestrator = Settings(default_version=4).make_orchestrator(engine)
    assert orchestrator.engine is engine
    assert orchestrator.default_version == 4


def test_orchestrator_rejects_bad_default_version():
    with pytest.raises(ValueError):
        Orchestrator(MemoryEngine(), default_version=0)
