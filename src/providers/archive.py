"""Archive provider: builds zip files from local sources.

The archive_file data source is read-only from the engine's point of
view. Building it is deterministic (sorted entries, fixed timestamps and
permissions) so identical sources produce identical hashes and an
unchanged source tree never shows up as a change in the plan.
"""

import base64
import fnmatch
import hashlib
import logging
import zipfile

from providers.base import DataSourceType, Provider, ProviderContext, ProviderError

logger = logging.getLogger(__name__)

# Earliest timestamp a zip entry can carry
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class ArchiveFile(DataSourceType):
    """Zip archive built from source_dir, source_file or source_content."""

    kind = 'archive_file'
    required = ('type', 'output_path')
    optional = ('source_dir', 'source_file', 'source_content', 'source_content_filename', 'excludes')
    computed = ('output_md5', 'output_sha256', 'output_base64sha256', 'output_size')
    strings = ('type', 'output_path', 'source_dir', 'source_file', 'source_content_filename')
    enums = {'type': ('zip',)}

    def validate(self, attributes: dict) -> list[str]:
        errors = super().validate(attributes)
        sources = [k for k in ('source_dir', 'source_file', 'source_content') if k in attributes]
        if len(sources) != 1:
            errors.append("exactly one of source_dir, source_file or source_content is required")
        if 'source_content' in attributes and 'source_content_filename' not in attributes:
            errors.append("source_content requires source_content_filename")
        return errors

    def _entries(self, attributes: dict, ctx: ProviderContext) -> list[tuple[str, bytes]]:
        """Collect (archive name, content) pairs in archive order."""
        if 'source_content' in attributes:
            return [(attributes['source_content_filename'], str(attributes['source_content']).encode())]

        if 'source_file' in attributes:
            path = ctx.resolve_path(attributes['source_file'])
            if not path.is_file():
                raise ProviderError(f"source_file not found: {path}")
            return [(path.name, path.read_bytes())]

        root = ctx.resolve_path(attributes['source_dir'])
        if not root.is_dir():
            raise ProviderError(f"source_dir not found: {root}")
        excludes = list(attributes.get('excludes') or [])
        output = ctx.resolve_path(attributes['output_path']).resolve()

        entries = []
        for path in sorted(p for p in root.rglob('*') if p.is_file()):
            rel = path.relative_to(root).as_posix()
            if any(fnmatch.fnmatch(rel, pattern) for pattern in excludes):
                continue
            if path.resolve() == output:
                continue
            entries.append((rel, path.read_bytes()))
        if not entries:
            raise ProviderError(f"source_dir is empty: {root}")
        return entries

    def read(self, attributes: dict, ctx: ProviderContext) -> dict:
        entries = self._entries(attributes, ctx)
        output = ctx.resolve_path(attributes['output_path'])
        output.parent.mkdir(parents=True, exist_ok=True)

        with zipfile.ZipFile(output, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            for name, content in entries:
                info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
                info.external_attr = 0o644 << 16
                info.compress_type = zipfile.ZIP_DEFLATED
                zf.writestr(info, content)

        data = output.read_bytes()
        sha256 = hashlib.sha256(data)
        logger.debug(f"Built archive {output} ({len(entries)} files, {len(data)} bytes)")
        return {
            'output_md5': hashlib.md5(data).hexdigest(),
            'output_sha256': sha256.hexdigest(),
            'output_base64sha256': base64.b64encode(sha256.digest()).decode(),
            'output_size': len(data),
        }


class ArchiveProvider(Provider):
    """Built-in provider; needs no configuration or provider block."""

    name = 'archive'

    def __init__(self):
        super().__init__()
        self.add_data_source_type(ArchiveFile())
