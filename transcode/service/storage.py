"""
Filesystem-backed derivative storage.

Derivatives of an asset live next to each other under
<root>/<asset name>/<asset name>.<variant key>.
"""
from pathlib import Path
from urllib.parse import quote
import os
import shutil
import tempfile


class DerivativeStorage:
    """Durable store for published derivatives"""

    def __init__(self, root, base_url=''):
        self.root = Path(root)
        self.base_url = base_url

    def derivative_path(self, asset, variant_key):
        """Storage-relative path of one derivative"""
        return f'{asset.name}/{asset.name}.{variant_key}'

    def master_playlist_path(self, asset):
        return f'{asset.name}/{asset.name}.m3u8'

    def local_path(self, path):
        return self.root / path

    def exists(self, path):
        return self.local_path(path).is_file()

    def url(self, path):
        return f"{self.base_url.rstrip('/')}/{quote(path)}"

    def stage_file(self, source, path):
        """
        Copy a local file next to its storage destination under a hidden name.

        Args:
            source: Local file to import
            path: Storage-relative destination path

        Returns:
            str: Local path of the staged copy, for commit_staged()

        Raises:
            OSError: If the copy fails
        """
        destination = self.local_path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f'.{destination.name}.', suffix='.tmp', dir=destination.parent
        )
        os.close(fd)
        try:
            shutil.copyfile(source, tmp_name)
        except OSError:
            os.unlink(tmp_name)
            raise
        return tmp_name

    def commit_staged(self, staged, path):
        """Rename a staged copy into place, replacing any previous file"""
        destination = self.local_path(path)
        try:
            os.replace(staged, destination)
        except OSError:
            self.discard_staged(staged)
            raise
        return destination

    def discard_staged(self, staged):
        if os.path.exists(staged):
            os.unlink(staged)

    def import_file(self, source, path):
        """
        Copy a local file into storage.

        The file is staged next to its destination and renamed into place,
        so readers see either the old derivative or the complete new one.

        Returns:
            Path: Final local path

        Raises:
            OSError: If the copy or rename fails
        """
        return self.commit_staged(self.stage_file(source, path), path)

    def write_text(self, path, text):
        """Atomically write a small text file (playlists) into storage"""
        destination = self.local_path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f'.{destination.name}.', suffix='.tmp', dir=destination.parent
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
            os.replace(tmp_name, destination)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return destination

    def delete(self, path):
        """Remove a stored file; missing files are ignored"""
        self.local_path(path).unlink(missing_ok=True)
