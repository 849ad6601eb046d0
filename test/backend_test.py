import botocore.exceptions
import botocore.stub
import pytest

import backend as examinee
import backend.localfs
import backend.oss
import backend.registry
import backend.s3
import oci.model as om
import oci.retry
import oci.util


def test_blob_id():
    assert examinee.blob_id('sha256:abc') == 'abc'
    assert examinee.blob_id('abc') == 'abc'


def test_parse_backend_config(tmp_path):
    assert examinee.parse_backend_config() is None
    assert examinee.parse_backend_config(config_json='{"dir": "/blobs"}') == {'dir': '/blobs'}

    config_file = tmp_path / 'backend.json'
    config_file.write_text('{"bucket_name": "blobs"}')
    assert examinee.parse_backend_config(config_file=config_file) == {'bucket_name': 'blobs'}

    with pytest.raises(ValueError):
        examinee.parse_backend_config(config_json='{}', config_file=config_file)

    with pytest.raises(ValueError):
        examinee.parse_backend_config(config_json='["not", "an", "object"]')


def test_new():
    with pytest.raises(ValueError):
        examinee.new(backend_type='localfs')

    with pytest.raises(ValueError):
        examinee.new(backend_type='ftp', config={})


def test_registry(tmp_path, registry):
    examinee_backend = examinee.new(
        backend_type='registry',
        oci_client=registry,
        image_reference='registry.example.org/app:1.0-nydus',
        plain_http=True,
    )
    assert isinstance(examinee_backend, backend.registry.RegistryBackend)

    blob = tmp_path / 'blob'
    blob.write_bytes(b'nydus-blob')
    blob_id = oci.util.sha256_digest(b'nydus-blob').removeprefix('sha256:')

    assert not examinee_backend.check(blob_id)
    blob_ref = examinee_backend.upload(blob_id=blob_id, path=blob, size=10)
    assert blob_ref.digest == f'sha256:{blob_id}'
    assert examinee_backend.check(blob_id)
    assert registry.head_blob('registry.example.org/app', f'sha256:{blob_id}').ok

    config = examinee_backend.nydusd_config()
    assert config['type'] == 'registry'
    assert config['config']['scheme'] == 'http'
    assert config['config']['repo'] == 'app'


def test_localfs(tmp_path):
    examinee_backend = examinee.new(
        backend_type='localfs',
        config={'dir': str(tmp_path / 'blobs')},
    )
    assert isinstance(examinee_backend, backend.localfs.LocalFsBackend)

    blob = tmp_path / 'blob'
    blob.write_bytes(b'nydus-blob')

    assert not examinee_backend.check('abc')

    blob_ref = examinee_backend.upload(blob_id='abc', path=blob, size=10)

    assert blob_ref == om.OciBlobRef(digest='sha256:abc', mediaType=om.NYDUS_BLOB_MIME, size=10)
    assert examinee_backend.check('abc')

    # present blobs are not overwritten, unless forced
    blob.write_bytes(b'changed')
    examinee_backend.upload(blob_id='abc', path=blob, size=7)
    assert (tmp_path / 'blobs' / 'abc').read_bytes() == b'nydus-blob'
    examinee_backend.upload(blob_id='abc', path=blob, size=7, force=True)
    assert (tmp_path / 'blobs' / 'abc').read_bytes() == b'changed'

    assert examinee_backend.nydusd_config() == {
        'type': 'localfs',
        'config': {'dir': str(tmp_path / 'blobs')},
    }

    with pytest.raises(ValueError):
        backend.localfs.LocalFsBackend(config={})


@pytest.fixture
def s3_backend():
    return backend.s3.S3Backend(config={
        'endpoint': 's3.example.org',
        'scheme': 'http',
        'region': 'eu-central-1',
        'bucket_name': 'blobs',
        'object_prefix': 'nydus/',
        'access_key_id': 'key-id',
        'access_key_secret': 'secret',
    })


def test_s3_check(s3_backend):
    expected_params = {'Bucket': 'blobs', 'Key': 'nydus/abc'}

    with botocore.stub.Stubber(s3_backend.s3_client) as stubber:
        stubber.add_response('head_object', {}, expected_params)
        stubber.add_client_error('head_object', http_status_code=404)
        stubber.add_client_error('head_object', http_status_code=503)
        stubber.add_client_error('head_object', http_status_code=403)

        assert s3_backend.check('abc')
        assert not s3_backend.check('abc')

        with pytest.raises(oci.retry.TransientError):
            s3_backend.check('abc')

        with pytest.raises(botocore.exceptions.ClientError) as exc_info:
            s3_backend.check('abc')
        assert oci.retry.classify(exc_info.value) is oci.retry.ErrorClass.PERMANENT


def test_s3_nydusd_config(s3_backend):
    assert s3_backend.s3_client.meta.endpoint_url == 'http://s3.example.org'
    assert s3_backend.nydusd_config() == {
        'type': 's3',
        'config': {
            'endpoint': 's3.example.org',
            'scheme': 'http',
            'region': 'eu-central-1',
            'bucket_name': 'blobs',
            'object_prefix': 'nydus/',
            'access_key_id': 'key-id',
            'access_key_secret': 'secret',
        },
    }

    with pytest.raises(ValueError):
        backend.s3.S3Backend(config={'region': 'eu-central-1'})


def test_oss_nydusd_config():
    oss_backend = backend.oss.OssBackend(config={
        'endpoint': 'http://oss-cn-hangzhou.aliyuncs.com',
        'access_key_id': 'key-id',
        'access_key_secret': 'secret',
        'bucket_name': 'blobs',
    })

    assert oss_backend.nydusd_config() == {
        'type': 'oss',
        'config': {
            'endpoint': 'oss-cn-hangzhou.aliyuncs.com',
            'access_key_id': 'key-id',
            'access_key_secret': 'secret',
            'bucket_name': 'blobs',
            'object_prefix': '',
            'scheme': 'http',
        },
    }

    with pytest.raises(ValueError):
        backend.oss.OssBackend(config={'bucket_name': 'blobs'})
