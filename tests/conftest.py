from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest


def make_dataset(
    name: str,
    kind: str = "FILESYSTEM",
    used: str = "96K",
    available: str = "1G",
    referenced: str = "96K",
    mountpoint: str | None = None,
    pool: str | None = None,
    createtxg: str = "1",
) -> dict[str, Any]:
    """One entry of `zfs list -j` output, shaped like OpenZFS 2.3 emits it."""
    base = name.split("@", 1)[0].split("#", 1)[0]
    if mountpoint is None:
        mountpoint = f"/{base}" if kind == "FILESYSTEM" else "-"

    def prop(value: str) -> dict[str, Any]:
        return {"value": value, "source": {"type": "NONE", "data": "-"}}

    dataset: dict[str, Any] = {
        "name": name,
        "type": kind,
        "pool": pool or base.split("/", 1)[0],
        "createtxg": createtxg,
        "properties": {
            "used": prop(used),
            "available": prop(available),
            "referenced": prop(referenced),
            "mountpoint": prop(mountpoint),
        },
    }
    if kind == "SNAPSHOT":
        dataset["dataset"], dataset["snapshot_name"] = name.split("@", 1)
    return dataset


def make_listing(*datasets: dict[str, Any]) -> dict[str, Any]:
    return {
        "output_version": {"command": "zfs list", "vers_major": 0, "vers_minor": 1},
        "datasets": {d["name"]: d for d in datasets},
    }


@pytest.fixture
def dataset():
    return make_dataset


@pytest.fixture
def listing():
    return make_listing


@pytest.fixture
def sample_listing() -> dict[str, Any]:
    return make_listing(
        make_dataset("tank", used="12.0G", available="100G"),
        make_dataset("tank/home", used="10G", available="100G"),
        make_dataset("tank/home/alice", used="5G", available="100G"),
        make_dataset("tank/home@daily-1", kind="SNAPSHOT", used="1.2M", available="-"),
        make_dataset("tank/home@daily-2", kind="SNAPSHOT", used="0B", available="-"),
        make_dataset("tank/home#keep", kind="BOOKMARK", used="-", available="-"),
        make_dataset("tank/vm0", kind="VOLUME", used="8G", available="100G", mountpoint="-"),
        make_dataset("backup", used="1T", available="3T"),
        make_dataset("backup/tank@daily-1", kind="SNAPSHOT", used="0B", available="-"),
    )


@pytest.fixture
def listing_file(tmp_path: Path, sample_listing: dict[str, Any]) -> Path:
    path = tmp_path / "zfs_list.json"
    path.write_text(json.dumps(sample_listing), encoding="utf-8")
    return path
