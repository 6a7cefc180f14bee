"""
Source asset lookup.

The engine only reads assets. SourceAsset rows are converted into immutable
Asset values so nothing downstream can mutate them.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from transcode.service.constants import DEFAULT_FPS


@dataclass(frozen=True)
class Asset:
    """Immutable view of a source media file"""

    guid: str
    name: str
    path: Path
    mime_type: str = ''
    duration: float = 0.0
    width: int = 0
    height: int = 0
    frame_rate: Optional[float] = None
    interlaced: bool = False

    @property
    def source_frame_rate(self):
        """Detected frame rate, or the default when it's unknown"""
        return self.frame_rate or DEFAULT_FPS

    @classmethod
    def from_model(cls, item):
        return cls(
            guid=item.guid,
            name=item.name,
            path=Path(item.path),
            mime_type=item.mime_type,
            duration=float(item.duration or 0.0),
            width=int(item.width or 0),
            height=int(item.height or 0),
            frame_rate=item.frame_rate,
            interlaced=bool(item.interlaced),
        )


class AssetLookup:
    """Asset lookup backed by the SourceAsset table"""

    def get(self, guid):
        """
        Fetch an asset by identity.

        Returns:
            Asset or None if no such asset exists
        """
        from transcode.models import SourceAsset

        try:
            item = SourceAsset.objects.get(guid=guid)
        except SourceAsset.DoesNotExist:
            return None
        return Asset.from_model(item)
