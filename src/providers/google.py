"""Google provider: storage and cloud function resource types.

Types talk to a backend through a small record interface (see
providers/local_cloud.py). The default backend is a LocalCloud persisted
under the engine's state directory, one file per project.

Resource ids:
    storage_bucket                       NAME
    storage_bucket_object                BUCKET/NAME
    cloudfunctions_function              projects/P/locations/R/functions/NAME
    cloudfunctions_function_iam_member   FUNCTION_ID/ROLE/MEMBER
"""

import base64
import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Optional

from providers.base import Provider, ProviderContext, ProviderError, ResourceType
from providers.local_cloud import LocalCloud
from references import contains_unknown

logger = logging.getLogger(__name__)

STORAGE_API = 'https://storage.googleapis.com'

INGRESS_SETTINGS = ('ALLOW_ALL', 'ALLOW_INTERNAL_ONLY', 'ALLOW_INTERNAL_AND_GCLB')

_MEMBER_PREFIXES = ('user:', 'serviceAccount:', 'group:', 'domain:', 'principal:', 'principalSet:')
_WILDCARD_MEMBERS = ('allUsers', 'allAuthenticatedUsers')

_BUCKET_NAME = re.compile(r'^[a-z0-9][a-z0-9._-]{1,61}[a-z0-9]$')
_FUNCTION_NAME = re.compile(r'^[A-Za-z][A-Za-z0-9_-]{0,62}$')


def file_md5_base64(path: Path) -> str:
    """MD5 of a file, base64 encoded (object storage md5Hash format)."""
    digest = hashlib.md5(Path(path).read_bytes()).digest()
    return base64.b64encode(digest).decode()


def _known(value: Any) -> bool:
    return value is not None and not contains_unknown(value)


def _location(attributes: dict, ctx: ProviderContext) -> dict:
    """Effective project and region: the block's own, else the provider's."""
    return {
        'project': attributes.get('project') or ctx.config.get('project'),
        'region': attributes.get('region') or ctx.config.get('region'),
    }


class StorageBucket(ResourceType):
    kind = 'storage_bucket'
    required = ('name',)
    optional = ('location', 'storage_class', 'force_destroy', 'labels', 'uniform_bucket_level_access')
    computed = ('url', 'self_link')
    strings = ('name', 'location', 'storage_class')
    booleans = ('force_destroy', 'uniform_bucket_level_access')
    force_new = ('name', 'location')

    def validate(self, attributes: dict) -> list[str]:
        errors = super().validate(attributes)
        name = attributes.get('name')
        if isinstance(name, str) and '${' not in name and not _BUCKET_NAME.match(name):
            errors.append(f"invalid bucket name '{name}'")
        return errors

    def create(self, attributes: dict, ctx: ProviderContext) -> tuple[str, dict]:
        cloud: LocalCloud = ctx.backend
        name = attributes['name']
        with cloud.transaction():
            if cloud.exists('buckets', name):
                raise ProviderError(f"409 bucket '{name}' already exists")
            computed = {
                'url': f'gs://{name}',
                'self_link': f'{STORAGE_API}/storage/v1/b/{name}',
            }
            record = {'location': 'US', 'storage_class': 'STANDARD', **attributes, **computed}
            cloud.put('buckets', name, record)
        return name, computed

    def read(self, resource_id: str, ctx: ProviderContext) -> Optional[dict]:
        return ctx.backend.get('buckets', resource_id)

    def update(self, resource_id: str, attributes: dict, prior: dict, ctx: ProviderContext) -> dict:
        cloud: LocalCloud = ctx.backend
        with cloud.transaction():
            record = cloud.get('buckets', resource_id)
            if record is None:
                raise ProviderError(f"404 bucket '{resource_id}' not found")
            record.update(attributes)
            cloud.put('buckets', resource_id, record)
        return {k: record[k] for k in self.computed}

    def delete(self, resource_id: str, ctx: ProviderContext) -> None:
        cloud: LocalCloud = ctx.backend
        with cloud.transaction():
            record = cloud.get('buckets', resource_id)
            if record is None:
                return
            objects = cloud.keys('objects', prefix=f'{resource_id}/')
            if objects and not record.get('force_destroy'):
                raise ProviderError(
                    f"409 bucket '{resource_id}' is not empty ({len(objects)} objects)"
                )
            for key in objects:
                cloud.delete('objects', key)
            cloud.delete('buckets', resource_id)


class StorageBucketObject(ResourceType):
    kind = 'storage_bucket_object'
    required = ('name', 'bucket', 'source')
    optional = ('content_type', 'metadata')
    computed = ('md5hash', 'media_link', 'self_link', 'size', 'source_md5')
    strings = ('name', 'bucket', 'source', 'content_type')
    force_new = ('name', 'bucket', 'source', 'source_md5', 'content_type')

    def derive(self, attributes: dict, ctx: ProviderContext) -> dict:
        source = attributes.get('source')
        if not _known(source):
            return {}
        path = ctx.resolve_path(source)
        if not path.is_file():
            return {}
        return {'source_md5': file_md5_base64(path)}

    def create(self, attributes: dict, ctx: ProviderContext) -> tuple[str, dict]:
        cloud: LocalCloud = ctx.backend
        bucket = attributes['bucket']
        name = attributes['name']
        path = ctx.resolve_path(attributes['source'])
        if not path.is_file():
            raise ProviderError(f"source file not found: {path}")
        key = f'{bucket}/{name}'
        with cloud.transaction():
            if not cloud.exists('buckets', bucket):
                raise ProviderError(f"404 bucket '{bucket}' not found")
            md5 = file_md5_base64(path)
            computed = {
                'md5hash': md5,
                'source_md5': md5,
                'size': path.stat().st_size,
                'media_link': f'{STORAGE_API}/download/storage/v1/b/{bucket}/o/{name}?alt=media',
                'self_link': f'{STORAGE_API}/storage/v1/b/{bucket}/o/{name}',
            }
            cloud.put('objects', key, {**attributes, **computed})
        return key, computed

    def read(self, resource_id: str, ctx: ProviderContext) -> Optional[dict]:
        return ctx.backend.get('objects', resource_id)

    def update(self, resource_id: str, attributes: dict, prior: dict, ctx: ProviderContext) -> dict:
        cloud: LocalCloud = ctx.backend
        with cloud.transaction():
            record = cloud.get('objects', resource_id)
            if record is None:
                raise ProviderError(f"404 object '{resource_id}' not found")
            record.update(attributes)
            cloud.put('objects', resource_id, record)
        return {k: record[k] for k in self.computed if k in record}

    def delete(self, resource_id: str, ctx: ProviderContext) -> None:
        ctx.backend.delete('objects', resource_id)


class CloudFunction(ResourceType):
    kind = 'cloudfunctions_function'
    required = ('name', 'runtime')
    optional = (
        'description', 'entry_point', 'trigger_http', 'ingress_settings',
        'available_memory_mb', 'timeout', 'source_archive_bucket',
        'source_archive_object', 'environment_variables', 'labels',
        'project', 'region',
    )
    computed = ('https_trigger_url', 'status', 'version_id')
    strings = (
        'name', 'runtime', 'description', 'entry_point', 'source_archive_bucket',
        'source_archive_object', 'project', 'region',
    )
    booleans = ('trigger_http',)
    enums = {'ingress_settings': INGRESS_SETTINGS}
    force_new = ('name', 'project', 'region', 'trigger_http')

    def validate(self, attributes: dict) -> list[str]:
        errors = super().validate(attributes)
        name = attributes.get('name')
        if isinstance(name, str) and '${' not in name and not _FUNCTION_NAME.match(name):
            errors.append(f"invalid function name '{name}'")
        memory = attributes.get('available_memory_mb')
        if isinstance(memory, int) and not isinstance(memory, bool) and memory not in (
                128, 256, 512, 1024, 2048, 4096, 8192):
            errors.append(f"available_memory_mb {memory} is not a supported size")
        return errors

    def derive(self, attributes: dict, ctx: ProviderContext) -> dict:
        return _location(attributes, ctx)

    @staticmethod
    def function_id(attributes: dict, ctx: ProviderContext) -> str:
        where = _location(attributes, ctx)
        return f"projects/{where['project']}/locations/{where['region']}/functions/{attributes['name']}"

    def _check_source(self, attributes: dict, cloud: LocalCloud) -> None:
        bucket = attributes.get('source_archive_bucket')
        obj = attributes.get('source_archive_object')
        if bucket is None and obj is None:
            return
        if bucket is None or obj is None:
            raise ProviderError("source_archive_bucket and source_archive_object must be set together")
        if not cloud.exists('objects', f'{bucket}/{obj}'):
            raise ProviderError(f"404 source archive gs://{bucket}/{obj} not found")

    def _computed(self, attributes: dict, ctx: ProviderContext, version: int) -> dict:
        where = _location(attributes, ctx)
        url = ''
        if attributes.get('trigger_http'):
            url = f"https://{where['region']}-{where['project']}.cloudfunctions.net/{attributes['name']}"
        return {'https_trigger_url': url, 'status': 'ACTIVE', 'version_id': str(version)}

    def create(self, attributes: dict, ctx: ProviderContext) -> tuple[str, dict]:
        cloud: LocalCloud = ctx.backend
        fid = self.function_id(attributes, ctx)
        with cloud.transaction():
            if cloud.exists('functions', fid):
                raise ProviderError(f"409 function '{fid}' already exists")
            self._check_source(attributes, cloud)
            computed = self._computed(attributes, ctx, version=1)
            cloud.put('functions', fid, {
                'ingress_settings': 'ALLOW_ALL', **attributes, **computed,
            })
        return fid, computed

    def read(self, resource_id: str, ctx: ProviderContext) -> Optional[dict]:
        return ctx.backend.get('functions', resource_id)

    def update(self, resource_id: str, attributes: dict, prior: dict, ctx: ProviderContext) -> dict:
        cloud: LocalCloud = ctx.backend
        with cloud.transaction():
            record = cloud.get('functions', resource_id)
            if record is None:
                raise ProviderError(f"404 function '{resource_id}' not found")
            self._check_source(attributes, cloud)
            version = int(record.get('version_id', '1')) + 1
            record.update(attributes)
            computed = self._computed(record, ctx, version=version)
            record.update(computed)
            cloud.put('functions', resource_id, record)
        return computed

    def delete(self, resource_id: str, ctx: ProviderContext) -> None:
        cloud: LocalCloud = ctx.backend
        with cloud.transaction():
            cloud.delete('functions', resource_id)
            for key in cloud.keys('function_iam', prefix=f'{resource_id}/'):
                cloud.delete('function_iam', key)


class CloudFunctionIamMember(ResourceType):
    kind = 'cloudfunctions_function_iam_member'
    required = ('cloud_function', 'member', 'role')
    optional = ('project', 'region')
    computed = ('etag',)
    strings = ('cloud_function', 'member', 'role', 'project', 'region')
    force_new = ('cloud_function', 'member', 'role', 'project', 'region')

    def validate(self, attributes: dict) -> list[str]:
        errors = super().validate(attributes)
        member = attributes.get('member')
        if isinstance(member, str) and '${' not in member:
            if member not in _WILDCARD_MEMBERS and not member.startswith(_MEMBER_PREFIXES):
                errors.append(
                    f"invalid member '{member}': expected allUsers, allAuthenticatedUsers "
                    f"or a prefixed principal (user:, serviceAccount:, group:, domain:)"
                )
        role = attributes.get('role')
        if isinstance(role, str) and '${' not in role and not role.startswith('roles/'):
            errors.append(f"invalid role '{role}': must start with roles/")
        return errors

    def derive(self, attributes: dict, ctx: ProviderContext) -> dict:
        return _location(attributes, ctx)

    def _function_key(self, attributes: dict, ctx: ProviderContext) -> str:
        function = attributes['cloud_function']
        if function.startswith('projects/'):
            return function
        return CloudFunction.function_id({
            'name': function,
            'project': attributes.get('project'),
            'region': attributes.get('region'),
        }, ctx)

    def create(self, attributes: dict, ctx: ProviderContext) -> tuple[str, dict]:
        cloud: LocalCloud = ctx.backend
        fid = self._function_key(attributes, ctx)
        key = f"{fid}/{attributes['role']}/{attributes['member']}"
        with cloud.transaction():
            if not cloud.exists('functions', fid):
                raise ProviderError(f"404 function '{fid}' not found")
            etag = base64.b64encode(hashlib.sha1(key.encode()).digest()[:8]).decode()
            computed = {'etag': etag}
            cloud.put('function_iam', key, {**attributes, **computed})
        return key, computed

    def read(self, resource_id: str, ctx: ProviderContext) -> Optional[dict]:
        return ctx.backend.get('function_iam', resource_id)

    def update(self, resource_id: str, attributes: dict, prior: dict, ctx: ProviderContext) -> dict:
        # Every attribute is force-new; nothing to change in place
        return {'etag': prior.get('etag', '')}

    def delete(self, resource_id: str, ctx: ProviderContext) -> None:
        ctx.backend.delete('function_iam', resource_id)


def is_publicly_invokable(cloud: LocalCloud, function_id: str) -> bool:
    """True if allUsers holds the invoker role on the function."""
    key = f'{function_id}/roles/cloudfunctions.invoker/allUsers'
    return cloud.exists('function_iam', key)


class GoogleProvider(Provider):
    """Google storage and cloud functions."""

    name = 'google'
    required_config = ('project', 'region')

    def __init__(self, backend: Optional[LocalCloud] = None):
        super().__init__()
        self._backend = backend
        for rtype in (StorageBucket(), StorageBucketObject(), CloudFunction(), CloudFunctionIamMember()):
            self.add_resource_type(rtype)

    def make_backend(self, config: dict, data_dir: Optional[Path]) -> LocalCloud:
        if self._backend is not None:
            return self._backend
        if data_dir is None:
            logger.debug("No data dir for google provider; using in-memory local cloud")
            self._backend = LocalCloud()
        else:
            self._backend = LocalCloud(data_dir / f"google-{config['project']}.json")
        return self._backend
