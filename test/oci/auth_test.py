import base64
import json

import pytest

import oci.auth as oa


def _write_docker_cfg(path, auths: dict) -> str:
    path.write_text(json.dumps({'auths': auths}))
    return str(path)


def test_docker_credentials_lookup_absent_cfg(tmp_path):
    absent_cfg = str(tmp_path / 'absent.json')

    with pytest.raises(RuntimeError):
        oa.docker_credentials_lookup(docker_cfg=absent_cfg)

    lookup = oa.docker_credentials_lookup(docker_cfg=absent_cfg, absent_ok=True)
    assert lookup(image_reference='example.org/foo:1', absent_ok=True) is None

    with pytest.raises(ValueError):
        lookup(image_reference='example.org/foo:1', absent_ok=False)


def test_docker_credentials_lookup_auth(tmp_path):
    auth = base64.b64encode(b'user:pass:word').decode('utf-8')
    docker_cfg = _write_docker_cfg(
        tmp_path / 'config.json',
        auths={
            'https://example.org': {'auth': auth},
            'other.org:5000': {'username': 'u', 'password': 'p'},
        },
    )
    lookup = oa.docker_credentials_lookup(docker_cfg=docker_cfg)

    creds = lookup(image_reference='example.org/foo/bar:1.2.3')
    assert creds == oa.OciBasicAuthCredentials(username='user', password='pass:word')

    creds = lookup(
        image_reference='other.org:5000/foo@sha256:abc',
        privileges=oa.Privileges.READWRITE,
    )
    assert creds == oa.OciBasicAuthCredentials(username='u', password='p')

    assert lookup(image_reference='unknown.org/foo:1', absent_ok=True) is None
    with pytest.raises(ValueError):
        lookup(image_reference='unknown.org/foo:1')


def test_docker_credentials_lookup_docker_hub(tmp_path):
    auth = base64.b64encode(b'hubuser:secret').decode('utf-8')
    docker_cfg = _write_docker_cfg(
        tmp_path / 'config.json',
        auths={
            'https://index.docker.io/v1/': {'auth': auth},
        },
    )
    lookup = oa.docker_credentials_lookup(docker_cfg=docker_cfg)

    # short references are normalised to registry-1.docker.io
    creds = lookup(image_reference='alpine:3')
    assert creds.username == 'hubuser'


def test_anonymous_credentials_lookup():
    assert oa.anonymous_credentials_lookup(image_reference='example.org/foo') is None

    with pytest.raises(ValueError):
        oa.anonymous_credentials_lookup(image_reference='example.org/foo', absent_ok=False)
