from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional
import json

from common.errors import InvalidGeometry


MANIFEST_CONTENT_TYPE = "application/json"

_CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


def content_type_for(encoding: str) -> str:
    return _CONTENT_TYPES.get(encoding.lower(), "application/octet-stream")


@dataclass(frozen=True, slots=True)
class TileAddress:
    """
    Position of one tile inside a pyramid.

    Attributes:
        level: 0 is the coarsest level, maxLevel is native resolution.
        col, row: zero-based grid position within the level.
    """
    level: int
    col: int
    row: int

    def __post_init__(self) -> None:
        if self.level < 0 or self.col < 0 or self.row < 0:
            raise InvalidGeometry(f"tile address must be non-negative: {self.level}/{self.col}_{self.row}")

    def key(self, tiles_base: str, ext: str) -> str:
        """Logical store key, e.g. /tiles/2/3_1.png"""
        return f"{tiles_base}/{self.level}/{self.col}_{self.row}.{ext}"


@dataclass(frozen=True, slots=True)
class PyramidManifest:
    """
    Geometry and addressing of the active pyramid, as read by the viewer.

    Build with `PyramidManifest.derive(...)`; max_level is never supplied by hand.
    """
    full_width: int
    full_height: int
    tile_edge: int
    max_level: int
    tiles_base: str = "/tiles"
    encoding: str = "png"
    overlap: int = 0

    @classmethod
    def derive(
        cls,
        full_width: int,
        full_height: int,
        tile_edge: int,
        *,
        tiles_base: str = "/tiles",
        encoding: str = "png",
    ) -> "PyramidManifest":
        from tiler.geometry import compute_max_level

        return cls(
            full_width=int(full_width),
            full_height=int(full_height),
            tile_edge=int(tile_edge),
            max_level=compute_max_level(full_width, full_height, tile_edge),
            tiles_base=tiles_base.rstrip("/"),
            encoding=encoding,
        )

    @property
    def tile_url_template(self) -> str:
        return f"{self.tiles_base}/{{level}}/{{col}}_{{row}}.{self.encoding}"

    @property
    def content_type(self) -> str:
        return content_type_for(self.encoding)

    def tile_key(self, address: TileAddress) -> str:
        return address.key(self.tiles_base, self.encoding)

    def to_dict(self) -> Dict[str, Any]:
        # Shape consumed by the OpenSeadragon-style viewer
        return {
            "tileSources": {
                "width": self.full_width,
                "height": self.full_height,
                "tileSize": self.tile_edge,
                "tileOverlap": self.overlap,
                "minLevel": 0,
                "maxLevel": self.max_level,
                "tilesUrl": self.tiles_base,
                "format": self.encoding,
                "getTileUrl": self.tile_url_template,
            }
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "PyramidManifest":
        doc = json.loads(data)
        src = doc.get("tileSources", doc)
        try:
            m = cls.derive(
                int(src["width"]),
                int(src["height"]),
                int(src.get("tileSize", 256)),
                tiles_base=str(src.get("tilesUrl", "/tiles")),
                encoding=str(src.get("format", "png")),
            )
        except KeyError as e:
            raise InvalidGeometry(f"manifest missing field {e}") from None
        if "maxLevel" in src and int(src["maxLevel"]) != m.max_level:
            raise InvalidGeometry(
                f"manifest maxLevel {src['maxLevel']} does not match geometry ({m.max_level})"
            )
        return m


@dataclass(slots=True)
class StoreEntry:
    key: str
    payload: bytes = field(repr=False)
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True, slots=True)
class CacheGeneration:
    """A version tag and the asset store names that belong to it."""
    version: str
    store_names: FrozenSet[str]


@dataclass(frozen=True, slots=True)
class PyramidSession:
    """
    The stores and paths in effect for the active pyramid. Passed explicitly
    to both the builder (writer) and the router (reader).
    """
    tile_store: str = "tiles"
    tiles_base: str = "/tiles"
    manifest_name: str = "osd_config.json"
    encoding: str = "png"

    @property
    def manifest_path(self) -> str:
        return f"{self.tiles_base}/{self.manifest_name}"

    @property
    def manifest_suffix(self) -> str:
        # e.g. ".json"
        dot = self.manifest_name.rfind(".")
        return self.manifest_name[dot:] if dot >= 0 else ""

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "PyramidSession":
        t = (cfg or {}).get("tiles", {})
        return cls(
            tile_store=str(t.get("store_name", "tiles")),
            tiles_base="/" + str(t.get("tiles_base", "/tiles")).strip("/"),
            manifest_name=str(t.get("manifest_name", "osd_config.json")),
            encoding=str(t.get("encoding", "png")),
        )
