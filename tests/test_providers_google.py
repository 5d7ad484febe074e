"""Tests for providers/google.py and the local cloud backend."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from providers.base import ProviderError
from providers.google import (
    CloudFunction,
    CloudFunctionIamMember,
    GoogleProvider,
    StorageBucket,
    StorageBucketObject,
    file_md5_base64,
    is_publicly_invokable,
)
from providers.local_cloud import LocalCloud

FUNCTION_ID = 'projects/demo/locations/us-central1/functions/hello'


@pytest.fixture
def cloud():
    return LocalCloud()


@pytest.fixture
def ctx(cloud, tmp_path):
    provider = GoogleProvider(backend=cloud)
    return provider.context({'project': 'demo', 'region': 'us-central1'}, tmp_path)


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / 'function.zip'
    path.write_bytes(b'PK fake archive')
    return path


def _bucket(ctx, name='demo-functions', **attrs):
    return StorageBucket().create({'name': name, **attrs}, ctx)


def _object(ctx, bucket='demo-functions', name='fn.zip'):
    return StorageBucketObject().create({'name': name, 'bucket': bucket, 'source': 'function.zip'}, ctx)


def _function(ctx, **attrs):
    base = {
        'name': 'hello', 'runtime': 'python312', 'entry_point': 'hello_http', 'trigger_http': True,
        'source_archive_bucket': 'demo-functions', 'source_archive_object': 'fn.zip',
    }
    base.update(attrs)
    return CloudFunction().create(base, ctx)


class TestGoogleProvider:
    """Provider configuration."""

    def test_requires_project_and_region(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            GoogleProvider(backend=LocalCloud()).context({}, tmp_path)
        assert "missing required setting 'project'" in str(exc_info.value)
        assert "missing required setting 'region'" in str(exc_info.value)

    def test_backend_persisted_under_data_dir(self, tmp_path):
        ctx = GoogleProvider().context({'project': 'demo', 'region': 'r'}, tmp_path, tmp_path / 'data')
        assert ctx.backend.path == tmp_path / 'data' / 'google-demo.json'

    def test_registers_resource_types(self):
        assert set(GoogleProvider().resource_types) == {
            'storage_bucket', 'storage_bucket_object',
            'cloudfunctions_function', 'cloudfunctions_function_iam_member',
        }


class TestStorageBucket:
    """Tests for storage_bucket."""

    def test_create_and_read(self, ctx):
        resource_id, computed = _bucket(ctx, location='US')
        assert resource_id == 'demo-functions'
        assert computed['url'] == 'gs://demo-functions'
        record = StorageBucket().read(resource_id, ctx)
        assert record['location'] == 'US'
        assert record['storage_class'] == 'STANDARD'

    def test_name_collision(self, ctx):
        _bucket(ctx)
        with pytest.raises(ProviderError) as exc_info:
            _bucket(ctx)
        assert '409' in str(exc_info.value)

    def test_invalid_name(self):
        assert "invalid bucket name 'Bad_Name!'" in StorageBucket().validate({'name': 'Bad_Name!'})

    def test_referenced_name_not_checked(self):
        assert StorageBucket().validate({'name': '${var.project}-functions'}) == []

    def test_update(self, ctx):
        _bucket(ctx)
        StorageBucket().update('demo-functions', {'name': 'demo-functions', 'labels': {'a': 'b'}}, {}, ctx)
        assert StorageBucket().read('demo-functions', ctx)['labels'] == {'a': 'b'}

    def test_delete_non_empty_bucket_fails(self, ctx, archive):
        _bucket(ctx)
        _object(ctx)
        with pytest.raises(ProviderError) as exc_info:
            StorageBucket().delete('demo-functions', ctx)
        assert 'not empty' in str(exc_info.value)

    def test_force_destroy_removes_objects(self, ctx, cloud, archive):
        _bucket(ctx, force_destroy=True)
        _object(ctx)
        StorageBucket().delete('demo-functions', ctx)
        assert cloud.keys('objects') == []
        assert StorageBucket().read('demo-functions', ctx) is None

    def test_delete_missing_is_not_an_error(self, ctx):
        StorageBucket().delete('never-existed', ctx)


class TestStorageBucketObject:
    """Tests for storage_bucket_object."""

    def test_create(self, ctx, archive):
        _bucket(ctx)
        resource_id, computed = _object(ctx)
        assert resource_id == 'demo-functions/fn.zip'
        assert computed['md5hash'] == file_md5_base64(archive)
        assert computed['size'] == archive.stat().st_size

    def test_derive_tracks_source_content(self, ctx, archive):
        attrs = {'name': 'fn.zip', 'bucket': 'b', 'source': 'function.zip'}
        before = StorageBucketObject().derive(attrs, ctx)
        archive.write_bytes(b'PK different')
        after = StorageBucketObject().derive(attrs, ctx)
        assert before['source_md5'] != after['source_md5']
        assert 'source_md5' in StorageBucketObject.force_new

    def test_derive_missing_file(self, ctx):
        assert StorageBucketObject().derive({'source': 'missing.zip'}, ctx) == {}

    def test_non_string_source_rejected(self):
        errors = StorageBucketObject().validate({'name': 'fn.zip', 'bucket': 'b', 'source': 123})
        assert errors == ["attribute 'source' must be a string, got 123"]

    def test_referenced_source_not_type_checked(self):
        attrs = {'name': 'fn.zip', 'bucket': 'b', 'source': '${data.archive_file.src.output_path}'}
        assert StorageBucketObject().validate(attrs) == []

    def test_missing_bucket(self, ctx, archive):
        with pytest.raises(ProviderError) as exc_info:
            _object(ctx, bucket='nope')
        assert "404 bucket 'nope'" in str(exc_info.value)

    def test_missing_source(self, ctx):
        _bucket(ctx)
        with pytest.raises(ProviderError) as exc_info:
            _object(ctx)
        assert 'source file not found' in str(exc_info.value)


class TestCloudFunction:
    """Tests for cloudfunctions_function."""

    def test_create_http_function(self, ctx, archive):
        _bucket(ctx)
        _object(ctx)
        resource_id, computed = _function(ctx)
        assert resource_id == FUNCTION_ID
        assert computed['https_trigger_url'] == 'https://us-central1-demo.cloudfunctions.net/hello'
        assert computed['status'] == 'ACTIVE'
        assert CloudFunction().read(resource_id, ctx)['ingress_settings'] == 'ALLOW_ALL'

    def test_no_url_without_http_trigger(self, ctx):
        _, computed = _function(ctx, trigger_http=False, source_archive_bucket=None,
                                source_archive_object=None)
        assert computed['https_trigger_url'] == ''

    def test_missing_source_archive(self, ctx):
        with pytest.raises(ProviderError) as exc_info:
            _function(ctx)
        assert '404 source archive' in str(exc_info.value)

    def test_update_bumps_version(self, ctx, archive):
        _bucket(ctx)
        _object(ctx)
        _function(ctx)
        computed = CloudFunction().update(FUNCTION_ID, {'name': 'hello', 'runtime': 'python312',
                                                        'available_memory_mb': 512}, {}, ctx)
        assert computed['version_id'] == '2'
        assert CloudFunction().read(FUNCTION_ID, ctx)['available_memory_mb'] == 512

    def test_validate(self):
        errors = CloudFunction().validate({
            'name': '1bad', 'runtime': 'python312', 'available_memory_mb': 300,
            'ingress_settings': 'EVERYONE', 'trigger_http': 'yes',
        })
        assert "invalid function name '1bad'" in errors
        assert "available_memory_mb 300 is not a supported size" in errors
        assert any("'ingress_settings' must be one of" in e for e in errors)
        assert "attribute 'trigger_http' must be a boolean, got 'yes'" in errors

    def test_derive_effective_location(self, ctx):
        assert CloudFunction().derive({'name': 'hello'}, ctx) == {
            'project': 'demo', 'region': 'us-central1',
        }
        assert CloudFunction().derive({'name': 'hello', 'region': 'europe-west1'}, ctx) == {
            'project': 'demo', 'region': 'europe-west1',
        }
        assert {'project', 'region'} <= set(CloudFunction.force_new)

    def test_delete_removes_iam_bindings(self, ctx, cloud, archive):
        _bucket(ctx)
        _object(ctx)
        _function(ctx)
        CloudFunctionIamMember().create(
            {'cloud_function': 'hello', 'member': 'allUsers', 'role': 'roles/cloudfunctions.invoker'}, ctx)
        assert is_publicly_invokable(cloud, FUNCTION_ID)

        CloudFunction().delete(FUNCTION_ID, ctx)
        assert not is_publicly_invokable(cloud, FUNCTION_ID)
        assert cloud.keys('function_iam') == []


class TestCloudFunctionIamMember:
    """Tests for cloudfunctions_function_iam_member."""

    def test_grant_public_invoker(self, ctx, cloud, archive):
        _bucket(ctx)
        _object(ctx)
        _function(ctx)
        resource_id, computed = CloudFunctionIamMember().create(
            {'cloud_function': 'hello', 'member': 'allUsers', 'role': 'roles/cloudfunctions.invoker'}, ctx)
        assert resource_id == f'{FUNCTION_ID}/roles/cloudfunctions.invoker/allUsers'
        assert computed['etag']
        assert is_publicly_invokable(cloud, FUNCTION_ID)

    def test_full_function_id(self, ctx, archive):
        _bucket(ctx)
        _object(ctx)
        _function(ctx)
        resource_id, _ = CloudFunctionIamMember().create(
            {'cloud_function': FUNCTION_ID, 'member': 'user:a@example.com',
             'role': 'roles/cloudfunctions.invoker'}, ctx)
        assert resource_id.endswith('/user:a@example.com')

    def test_missing_function(self, ctx):
        with pytest.raises(ProviderError) as exc_info:
            CloudFunctionIamMember().create(
                {'cloud_function': 'hello', 'member': 'allUsers', 'role': 'roles/cloudfunctions.invoker'}, ctx)
        assert '404 function' in str(exc_info.value)

    def test_validate_member_and_role(self):
        errors = CloudFunctionIamMember().validate(
            {'cloud_function': 'hello', 'member': 'everyone', 'role': 'invoker'})
        assert any(e.startswith("invalid member 'everyone'") for e in errors)
        assert "invalid role 'invoker': must start with roles/" in errors

    def test_wildcard_members_valid(self):
        for member in ('allUsers', 'allAuthenticatedUsers', 'serviceAccount:sa@p.iam.gserviceaccount.com'):
            assert CloudFunctionIamMember().validate(
                {'cloud_function': 'hello', 'member': member, 'role': 'roles/cloudfunctions.invoker'}) == []


class TestLocalCloud:
    """Tests for the file-backed record store."""

    def test_persists_between_instances(self, tmp_path):
        path = tmp_path / 'cloud.json'
        LocalCloud(path).put('buckets', 'b', {'name': 'b'})
        assert LocalCloud(path).get('buckets', 'b') == {'name': 'b'}

    def test_get_returns_copy(self):
        cloud = LocalCloud()
        cloud.put('buckets', 'b', {'labels': {'a': '1'}})
        cloud.get('buckets', 'b')['labels']['a'] = '2'
        assert cloud.get('buckets', 'b') == {'labels': {'a': '1'}}

    def test_delete_and_keys(self):
        cloud = LocalCloud()
        cloud.put('objects', 'b/one', {})
        cloud.put('objects', 'b/two', {})
        cloud.put('objects', 'c/three', {})
        assert cloud.keys('objects', prefix='b/') == ['b/one', 'b/two']
        assert cloud.delete('objects', 'b/one') is True
        assert cloud.delete('objects', 'b/one') is False
        assert not cloud.exists('objects', 'b/one')
