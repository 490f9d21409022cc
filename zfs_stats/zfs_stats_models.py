"""Wire models for `zfs list -j` input and the aggregated ZfsStats output.

Field names follow the JSON produced by OpenZFS. `dataset_type` and
`source_type` travel under the key "type" on the wire.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PropertySource(WireModel):
    source_type: str = Field(alias="type")
    data: str = ""


class Property(WireModel):
    value: str
    source: PropertySource


class DatasetProperties(WireModel):
    used: Property
    available: Property
    referenced: Property
    mountpoint: Property


class Dataset(WireModel):
    name: str
    dataset_type: str = Field(alias="type")
    pool: str
    createtxg: str
    dataset: str | None = None
    snapshot_name: str | None = None
    properties: DatasetProperties


class OutputVersion(WireModel):
    command: str
    vers_major: int
    vers_minor: int


class ZfsListOutput(WireModel):
    output_version: OutputVersion
    datasets: dict[str, Dataset] = Field(default_factory=dict)


class ZfsStats(WireModel):
    pools: list[str] = Field(default_factory=list)
    filesystems: list[Dataset] = Field(default_factory=list)
    snapshots: list[Dataset] = Field(default_factory=list)
    bookmarks: list[Dataset] = Field(default_factory=list)
    total_used: str = "0B"
    total_available: str = "0B"


def to_wire(model: BaseModel) -> dict[str, Any]:
    # Only the optional snapshot fields can be None, and they are omitted on the wire.
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
