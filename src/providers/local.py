"""local provider: files on the local filesystem.

Provider configuration:
    base_dir: Directory relative filenames are resolved against (default: cwd)
"""

import hashlib
import logging
import os
from pathlib import Path

from errors import ProviderError, ResourceNotFound
from providers.base import ProviderPlugin, Resource, ResourceSchema

logger = logging.getLogger(__name__)


class LocalFile(Resource):
    """A file with managed content and permissions."""

    schema = ResourceSchema(
        force_new=frozenset({'filename'}),
        mutable=frozenset({'content', 'file_permission'}),
        computed=frozenset({'id', 'content_sha256'}),
    )

    def _path(self, attrs: dict) -> Path:
        filename = attrs.get('filename')
        if not filename:
            raise ProviderError("local_file: filename is required")
        path = Path(filename)
        if not path.is_absolute():
            path = Path(self.plugin.config.get('base_dir') or os.getcwd()) / path
        return path

    @staticmethod
    def _digests(content: str) -> dict:
        data = content.encode()
        return {
            'id': hashlib.sha1(data).hexdigest(),
            'content_sha256': hashlib.sha256(data).hexdigest(),
        }

    def _write(self, attrs: dict) -> dict:
        path = self._path(attrs)
        content = attrs.get('content') or ''
        if not isinstance(content, str):
            raise ProviderError(f"local_file: content must be a string, got {type(content).__name__}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding='utf-8')
            if attrs.get('file_permission'):
                path.chmod(int(str(attrs['file_permission']), 8))
        except (OSError, ValueError) as e:
            raise ProviderError(f"local_file: cannot write {path}: {e}")
        logger.debug(f"Wrote {len(content)} bytes to {path}")
        return {**attrs, **self._digests(content)}

    def create(self, attrs: dict) -> tuple[dict, str]:
        result = self._write(attrs)
        return result, result['id']

    def read(self, attrs: dict) -> dict:
        path = self._path(attrs)
        if not path.exists():
            raise ResourceNotFound(f"local_file: {path} no longer exists")
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ProviderError(f"local_file: cannot read {path}: {e}")
        current = {**attrs, 'content': content, **self._digests(content)}
        if attrs.get('file_permission'):
            current['file_permission'] = format(path.stat().st_mode & 0o777, '04o')
        return current

    def update(self, old: dict, new: dict) -> dict:
        return self._write(new)

    def delete(self, attrs: dict) -> None:
        path = self._path(attrs)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ProviderError(f"local_file: cannot remove {path}: {e}")


class LocalProvider(ProviderPlugin):
    name = 'local'
    version = '2.5.1'
    resources = {'local_file': LocalFile}
