"""Tests for Installation construction and read queries."""

import asyncio
from pathlib import Path

import pytest
from refdeploy import Installation
from refdeploy import InstallationConfig
from refdeploy import InstallationError
from refdeploy import NotFoundError
from refdeploy import RefKind
from refdeploy import TransferError
from refdeploy import UpdateFlags

FOO_REF = "app/org.example.Foo/x86_64/master"
PLATFORM_REF = "runtime/org.example.Platform/x86_64/1.0"


@pytest.fixture
def populated(installation, store):
    store.advertise("test-remote", FOO_REF, "abc123")
    store.advertise("test-remote", PLATFORM_REF, "p1")
    installation.install("test-remote", RefKind.RUNTIME, "org.example.Platform", "x86_64", "1.0")
    installation.install("test-remote", RefKind.APP, "org.example.Foo", "x86_64")
    return installation


def test_new_user_and_system_use_config_paths(tmp_path, store):
    config = InstallationConfig(system_path=tmp_path / "system", user_path=tmp_path / "user")

    system = Installation.new_system(store, config)
    user = Installation.new_user(store, config)

    assert system.path == tmp_path / "system"
    assert not system.is_user
    assert user.path == tmp_path / "user"
    assert user.is_user
    assert (user.path / "repo").is_dir()


def test_config_from_env(tmp_path):
    config = InstallationConfig.from_env(
        {"REFDEPLOY_USER_DIR": str(tmp_path / "u"), "REFDEPLOY_LOCK_TIMEOUT": "5"}
    )

    assert config.user_path == tmp_path / "u"
    assert config.lock_timeout == 5.0
    assert config.system_path == InstallationConfig().system_path


def test_describe_not_installed(installation):
    with pytest.raises(NotFoundError, match="not installed"):
        installation.describe(FOO_REF)


def test_describe_tolerates_missing_latest_commit(populated):
    populated.dir.remove_ref("test-remote", FOO_REF)

    ref = populated.describe(FOO_REF)

    assert ref.commit == "abc123"
    assert ref.latest_commit is None


def test_get_installed_ref(populated):
    ref = populated.get_installed_ref(RefKind.RUNTIME, "org.example.Platform", "x86_64", "1.0")

    assert ref.format_ref() == PLATFORM_REF
    assert ref.origin == "test-remote"

    with pytest.raises(NotFoundError):
        populated.get_installed_ref(RefKind.APP, "org.example.Missing", "x86_64")


def test_get_current_installed_app(populated):
    ref = populated.get_current_installed_app("org.example.Foo")

    assert ref.format_ref() == FOO_REF
    assert ref.is_current

    with pytest.raises(NotFoundError, match="App org.example.Missing not installed"):
        populated.get_current_installed_app("org.example.Missing")


def test_list_installed_refs_apps_first(populated):
    refs = populated.list_installed_refs()

    assert [r.format_ref() for r in refs] == [FOO_REF, PLATFORM_REF]
    assert [r.format_ref() for r in populated.list_installed_refs_by_kind(RefKind.RUNTIME)] == [PLATFORM_REF]


def test_snapshots_are_fresh(populated):
    first = populated.describe(FOO_REF)
    second = populated.describe(FOO_REF)

    assert first == second
    assert first is not second


def test_get_remote_by_name(installation):
    assert installation.get_remote_by_name("test-remote").url == "https://example.org/repo"

    with pytest.raises(NotFoundError, match="No remote named 'nope'"):
        installation.get_remote_by_name("nope")


def test_delete_remote_value_keeps_entry(installation):
    remote = installation.get_remote_by_name("test-remote")
    del remote

    assert installation.get_remote_by_name("test-remote").name == "test-remote"

    installation.delete_remote("test-remote")
    assert installation.list_remotes() == []


def test_list_remote_refs_skips_non_package_refs(installation, store):
    store.advertise("test-remote", FOO_REF, "abc123")
    store.advertise("test-remote", "appstream/x86_64", "as1")

    refs = installation.list_remote_refs("test-remote")

    assert len(refs) == 1
    assert refs[0].format_ref() == FOO_REF
    assert refs[0].commit == "abc123"
    assert refs[0].remote_name == "test-remote"


def test_list_remote_refs_propagates_errors(installation, store):
    store.failing_remotes.add("test-remote")

    with pytest.raises(TransferError, match="unreachable"):
        installation.list_remote_refs("test-remote")


def test_fetch_remote_ref(installation, store):
    store.advertise("test-remote", FOO_REF, "abc123")

    ref = installation.fetch_remote_ref("test-remote", RefKind.APP, "org.example.Foo", "x86_64")

    assert ref.commit == "abc123"

    with pytest.raises(NotFoundError, match="doesn't exist in remote"):
        installation.fetch_remote_ref("test-remote", RefKind.APP, "org.example.Foo", "x86_64", "beta")


def test_fetch_remote_size_and_metadata(installation, store):
    store.ref_cache[("test-remote", FOO_REF)] = (100, 250, "[Application]\nname=org.example.Foo\n")

    assert installation.fetch_remote_size("test-remote", FOO_REF) == (100, 250)
    assert installation.fetch_remote_metadata("test-remote", FOO_REF).startswith(b"[Application]")


def test_update_appstream(installation, store):
    assert not installation.update_appstream("test-remote", "x86_64")

    store.advertise("test-remote", FOO_REF, "abc123")
    assert installation.update_appstream("test-remote")


def test_load_app_overrides(installation):
    overrides_dir = installation.path / "overrides"
    overrides_dir.mkdir()
    (overrides_dir / "org.example.Foo").write_text("[Context]\nshared=network;\n")

    assert "shared=network" in installation.load_app_overrides("org.example.Foo")

    with pytest.raises(NotFoundError):
        installation.load_app_overrides("org.example.Bar")


def test_launch(populated, launcher):
    populated.launch("org.example.Foo", "x86_64")

    assert launcher.launched == [(FOO_REF, populated.path / FOO_REF / "abc123", True)]


def test_launch_specific_commit_not_deployed(populated):
    with pytest.raises(NotFoundError):
        populated.launch("org.example.Foo", "x86_64", commit="nope")


def test_launch_without_launcher(tmp_path, store):
    installation = Installation.new_for_path(tmp_path / "inst", False, store)
    store.advertise("origin", FOO_REF, "abc123")
    installation.add_remote("origin", "https://o", gpg_verify=False)
    installation.install("origin", RefKind.APP, "org.example.Foo", "x86_64")

    with pytest.raises(InstallationError, match="No launcher"):
        installation.launch("org.example.Foo", "x86_64")


@pytest.mark.asyncio
async def test_create_monitor_watches_change_marker(installation, monkeypatch):
    calls = []

    async def fake_awatch(*paths, **kwargs):
        calls.append((paths, kwargs))
        yield {("modified", str(paths[0]))}

    import watchfiles

    monkeypatch.setattr(watchfiles, "awatch", fake_awatch)

    changes = [change async for change in installation.create_monitor()]

    assert installation.changed_path.exists()
    assert calls[0][0] == (installation.changed_path,)
    assert changes == [{("modified", str(installation.changed_path))}]


def test_clone_opens_its_own_store_handle(installation, store):
    dir_clone = installation.dir.clone()

    assert dir_clone.store is not store
    assert store.clones == [dir_clone.store]


def test_transactions_never_drive_callers_store(installation, store):
    store.advertise("test-remote", FOO_REF, "abc123")
    installation.install("test-remote", RefKind.APP, "org.example.Foo", "x86_64")
    store.advertise("test-remote", FOO_REF, "def456")
    installation.update(UpdateFlags.NONE, RefKind.APP, "org.example.Foo", "x86_64")
    installation.uninstall(RefKind.APP, "org.example.Foo", "x86_64")

    assert store.calls == []
    assert [handle.calls for handle in store.clones] == [
        ["pull", "checkout"],
        ["pull", "checkout", "prune"],
        ["prune"],
    ]
    assert store.pulls == [("test-remote", FOO_REF), ("test-remote", FOO_REF)]


@pytest.mark.asyncio
async def test_create_monitor_reports_marked_change(installation):
    stop_event = asyncio.Event()
    monitor = installation.create_monitor(stop_event)

    async def first_change():
        async for changes in monitor:
            return changes

    watcher = asyncio.create_task(first_change())
    # Keep touching the marker until the watcher has started and reported it
    for _ in range(20):
        installation.dir.mark_changed()
        await asyncio.wait([watcher], timeout=0.5)
        if watcher.done():
            break
    stop_event.set()

    changes = await asyncio.wait_for(watcher, timeout=5)
    assert installation.changed_path.name in {Path(path).name for _, path in changes}
