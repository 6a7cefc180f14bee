"""
Publication of finished encodes into durable storage.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import re

from transcode.service.constants import HLS_PLAYLIST_SUFFIX
from transcode.service.errors import PublicationFailure, Result, SandboxExecutionFailure
from transcode.service.params import max_size_transform
from transcode.service.segmenter import Rendition, build_master_playlist


@dataclass
class Publication:
    """What a successful commit placed in storage"""
    media_path: str
    final_bitrate: int
    playlist_path: Optional[str] = None
    urls: List[str] = field(default_factory=list)


def compute_bitrate(size_bytes, duration):
    """Achieved bitrate in bits per second"""
    if not duration or duration <= 0:
        return 0
    return int(round(size_bytes * 8 / duration))


def _codecs_from_mime(mime_type):
    match = re.search(r'codecs="([^"]*)"', mime_type)
    return match.group(1).replace(' ', '') if match else ''


class ResultPublisher:
    """Validates, imports and announces finished derivatives"""

    def __init__(self, storage, purger, catalog):
        self.storage = storage
        self.purger = purger
        self.catalog = catalog

    def playlist_key(self, variant_key):
        return f'{variant_key}{HLS_PLAYLIST_SUFFIX}'

    def validate(self, output_path):
        """The primary output must exist and be non-empty"""
        output = Path(output_path)
        if not output.is_file():
            return Result.fail(SandboxExecutionFailure(f'Target does not exist: {output}'))
        if output.stat().st_size == 0:
            return Result.fail(SandboxExecutionFailure(f'Target is empty: {output}'))
        return Result.ok(output)

    def commit(self, asset, spec, target, logger=None):
        """
        Import the encode (and its playlist, when streaming) into storage.

        Every artifact is staged next to its destination before any is
        renamed into place, so a failed copy leaves the previously published
        derivative untouched.

        Args:
            asset: Asset that was transcoded
            spec: VariantSpec of the derivative
            target: EncodeTarget holding the attempt's output

        Returns:
            Result carrying a Publication, or a SandboxExecutionFailure /
            PublicationFailure error
        """
        def log(message):
            if logger:
                logger(message)

        valid = self.validate(target.media_path)
        if not valid.is_ok:
            return valid

        size = target.media_path.stat().st_size
        final_bitrate = compute_bitrate(size, asset.duration)

        media_path = self.storage.derivative_path(asset, spec.key)
        playlist_path = None
        if spec.is_streaming:
            playlist_path = self.storage.derivative_path(asset, self.playlist_key(spec.key))

        try:
            staged_media = self.storage.stage_file(target.media_path, media_path)
        except OSError as e:
            return Result.fail(PublicationFailure(f'Failed to import {media_path}: {e}'))

        staged_playlist = None
        if playlist_path:
            try:
                staged_playlist = self.storage.stage_file(target.playlist_path, playlist_path)
            except OSError as e:
                self.storage.discard_staged(staged_media)
                return Result.fail(PublicationFailure(f'Failed to import {playlist_path}: {e}'))

        try:
            self.storage.commit_staged(staged_media, media_path)
        except OSError as e:
            if staged_playlist:
                self.storage.discard_staged(staged_playlist)
            return Result.fail(PublicationFailure(f'Failed to import {media_path}: {e}'))
        log(f"Imported {media_path} ({size} bytes, {final_bitrate} bps)")

        if staged_playlist:
            try:
                self.storage.commit_staged(staged_playlist, playlist_path)
            except OSError as e:
                self.storage.delete(media_path)
                return Result.fail(PublicationFailure(f'Failed to import {playlist_path}: {e}'))
            log(f"Imported {playlist_path}")

        return Result.ok(Publication(
            media_path=media_path,
            final_bitrate=final_bitrate,
            playlist_path=playlist_path,
            urls=self.derivative_urls(asset, spec),
        ))

    def derivative_urls(self, asset, spec):
        url = self.storage.url(self.storage.derivative_path(asset, spec.key))
        urls = [url]
        if spec.is_streaming:
            urls.append(f'{url}{HLS_PLAYLIST_SUFFIX}')
        return urls

    def remove(self, asset, spec):
        """Delete a derivative and its playlist from storage"""
        self.storage.delete(self.storage.derivative_path(asset, spec.key))
        if spec.is_streaming:
            self.storage.delete(self.storage.derivative_path(asset, self.playlist_key(spec.key)))

    def update_master_playlist(self, asset, bitrates, logger=None):
        """
        Regenerate the asset's master playlist.

        Args:
            asset: Asset
            bitrates: variant key -> final bitrate of the succeeded variants

        Returns:
            Storage path of the master playlist, or None if the asset has no
            published streaming variants
        """
        renditions = []
        for spec in self.catalog.streaming_variants():
            if spec.key not in bitrates:
                continue
            width = height = None
            if not spec.novideo and spec.max_size and asset.width and asset.height:
                width, height = max_size_transform(asset.width, asset.height, spec.max_size)
            renditions.append(Rendition(
                variant_key=spec.key,
                playlist_name=Path(
                    self.storage.derivative_path(asset, self.playlist_key(spec.key))
                ).name,
                bandwidth=int(bitrates[spec.key] or 0),
                audio=spec.novideo,
                codecs=_codecs_from_mime(spec.mime_type),
                width=width,
                height=height,
            ))

        path = self.storage.master_playlist_path(asset)
        if not renditions:
            self.storage.delete(path)
            return None
        self.storage.write_text(path, build_master_playlist(renditions))
        if logger:
            logger(f"Updated master playlist {path}")
        return path

    def purge(self, urls, logger=None):
        self.purger.purge(urls, logger=logger)
