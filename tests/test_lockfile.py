import json
from pathlib import Path

import pytest

from kiln.errors import LockMismatchError, ManifestError
from kiln.lockfile import (
    LockedPackage,
    build_lockfile,
    lockfile_digest,
    parse_lockfile,
    read_lockfile,
    resolve_locked,
    serialize_lockfile,
    write_lockfile,
)

SHA = "a" * 64

FOO = LockedPackage(
    name="foo",
    version="1.2.3",
    source="registry+https://packages.example.com/foo-1.2.3.sh",
    checksum="a" * 64,
)
BAR = LockedPackage(
    name="bar",
    version="0.4.0",
    source=f"git+https://git.example.com/bar.git#{'b' * 40}",
    checksum="c" * 40,
)


def test_serialization_is_deterministic_and_sorted() -> None:
    first = serialize_lockfile(build_lockfile([FOO, BAR]))
    second = serialize_lockfile(build_lockfile([BAR, FOO]))

    assert first == second
    payload = json.loads(first)
    assert payload["version"] == 1
    assert [item["name"] for item in payload["packages"]] == ["bar", "foo"]


def test_parse_lockfile_reads_both_source_kinds() -> None:
    lockfile = parse_lockfile(serialize_lockfile(build_lockfile([FOO, BAR])))

    (bar,) = lockfile.find("bar")
    (foo,) = lockfile.find("foo")
    assert bar.kind == "git"
    assert bar.location == "https://git.example.com/bar.git"
    assert bar.commit == "b" * 40
    assert foo.kind == "registry"
    assert foo.location == "https://packages.example.com/foo-1.2.3.sh"
    assert foo.commit is None
    assert foo.ident == "foo@1.2.3"


@pytest.mark.parametrize(
    "package",
    [
        {"name": "foo", "version": "1", "source": "registry+https://x/foo", "checksum": "abc"},
        {"name": "foo", "version": "1", "source": "git+https://x/foo.git#main", "checksum": "t"},
        {"name": "foo", "version": "1", "source": "path+../foo", "checksum": "a" * 64},
        {"name": "foo", "version": "1", "source": "registry+https://x/foo"},
        {"name": "../../x", "version": "1", "source": "registry+https://x/x", "checksum": SHA},
        {"name": "foo", "version": "../1", "source": "registry+https://x/foo", "checksum": SHA},
        {
            "name": "bar",
            "version": "1",
            "source": f"git+https://x/bar.git#{'b' * 40}",
            "checksum": "../../../../tmp/evil",
        },
    ],
)
def test_parse_lockfile_rejects_invalid_packages(package: dict[str, str]) -> None:
    raw = json.dumps({"version": 1, "packages": [package]})

    with pytest.raises(ManifestError):
        parse_lockfile(raw)


def test_parse_lockfile_rejects_duplicates_and_unknown_versions() -> None:
    entry = {
        "name": FOO.name,
        "version": FOO.version,
        "source": FOO.source,
        "checksum": FOO.checksum,
    }

    with pytest.raises(ManifestError, match="Duplicate"):
        parse_lockfile(json.dumps({"version": 1, "packages": [entry, entry]}))
    with pytest.raises(ManifestError, match="Unsupported lockfile version"):
        parse_lockfile(json.dumps({"version": 2, "packages": []}))
    with pytest.raises(ManifestError):
        parse_lockfile("{not json")


def test_read_lockfile_returns_raw_bytes_for_digest(tmp_path: Path) -> None:
    path = write_lockfile(build_lockfile([FOO]), tmp_path / "kiln.lock")

    lockfile, raw = read_lockfile(path)

    assert raw == path.read_bytes()
    assert lockfile.packages == (FOO,)
    assert len(lockfile_digest(raw)) == 64


def test_read_lockfile_missing_raises_manifest_error(tmp_path: Path) -> None:
    with pytest.raises(ManifestError) as excinfo:
        read_lockfile(tmp_path / "kiln.lock")

    assert excinfo.value.context["path"].endswith("kiln.lock")


def test_resolve_locked_requires_exact_single_match() -> None:
    lockfile = build_lockfile([FOO, BAR])

    resolved = resolve_locked(lockfile, {"foo": "1.2.3", "bar": "*"}, project="svc")

    assert [package.ident for package in resolved] == ["bar@0.4.0", "foo@1.2.3"]


def test_resolve_locked_never_relocks() -> None:
    lockfile = build_lockfile([FOO])

    with pytest.raises(LockMismatchError) as excinfo:
        resolve_locked(lockfile, {"foo": "2.0.0"}, project="svc")
    assert excinfo.value.context["locked"] == "1.2.3"

    with pytest.raises(LockMismatchError):
        resolve_locked(lockfile, {"missing": "*"}, project="svc")
