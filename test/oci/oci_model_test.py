import hashlib
import pytest

import oci.model as om

example_digest = hashlib.sha256('cafebabe'.encode('utf-8')).hexdigest()


def test_netloc():
    # simple case w/ symbolic tag
    ref = om.OciImageReference('example.org/path:tag')
    assert ref.netloc == 'example.org'

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    assert ref.netloc == 'example.org'

    ref = om.OciImageReference('example.org:1234/path:tag')
    assert ref.netloc == 'example.org:1234'

    ref = om.OciImageReference('example.org:1234/path@sha256:{example_digest}')
    assert ref.netloc == 'example.org:1234'

    # special handling to mimic docker-cli
    ref = om.OciImageReference('alpine:3')
    assert ref.netloc == 'registry-1.docker.io'


def test_ref_without_tag():
    ref = om.OciImageReference('example.org/path:tag')
    assert ref.ref_without_tag == 'example.org/path'

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    assert ref.ref_without_tag == 'example.org/path'

    ref = om.OciImageReference('example.org:1234/path:tag')
    assert ref.ref_without_tag == 'example.org:1234/path'

    # special handling to mimic docker-cli
    ref = om.OciImageReference('alpine:3')
    assert ref.ref_without_tag == 'registry-1.docker.io/library/alpine'


def test_name():
    ref = om.OciImageReference('example.org/path:tag')
    assert ref.name == 'path'

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    assert ref.name == 'path'

    ref = om.OciImageReference('example.org:1234/path:tag')
    assert ref.name == 'path'

    # special handling to mimic docker-cli
    ref = om.OciImageReference('alpine:3')
    assert ref.name == 'library/alpine'


def test_original_image_reference():
    ref = om.OciImageReference('alpine:3')
    assert ref.original_image_reference == 'alpine:3'

    # without tag
    ref = om.OciImageReference('eu.gcr.io/example/foo')
    assert ref.original_image_reference == 'eu.gcr.io/example/foo'


def test_tag():
    ref = om.OciImageReference('alpine:3')
    assert ref.tag == '3'

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    assert ref.tag == f'sha256:{example_digest}'

    ref = om.OciImageReference(f'example.org:1234/path@sha256:{example_digest}')
    assert ref.tag == f'sha256:{example_digest}'


def test_tag_type():
    ref = om.OciImageReference('example.org/path:symbolic-tag')
    assert ref.tag_type is om.OciTagType.SYMBOLIC

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    assert ref.tag_type is om.OciTagType.DIGEST


def test_str():
    ref = om.OciImageReference('alpine:3')
    assert str(ref) == ref.normalised_image_reference


def test_normalised_image_reference():
    ref = om.OciImageReference('alpine:3')
    assert ref.normalised_image_reference == 'registry-1.docker.io/library/alpine:3'

    ref = om.OciImageReference('eu.gcr.io/project/foo:bar')
    assert ref.normalised_image_reference == 'eu.gcr.io/project/foo:bar'

    # no tag
    ref = om.OciImageReference('eu.gcr.io/project/foo')
    assert ref.normalised_image_reference == 'eu.gcr.io/project/foo'


def test_eq():
    ref1 = om.OciImageReference('alpine:3')
    ref2 = om.OciImageReference('registry-1.docker.io/library/alpine:3')

    assert ref1 == ref2
    assert ref1 == ref1
    assert ref2 == ref2

    ref3 = om.OciImageReference('example.org/path:tag1')

    assert ref1 != ref3


def test_parsed_digest_tag():
    with pytest.raises(ValueError):
        om.OciImageReference('alpine:3').parsed_digest_tag

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    alg, dig = ref.parsed_digest_tag

    assert alg == 'sha256'
    assert dig == example_digest.split(':')[-1]

    ref = om.OciImageReference(f'alpine@sha256:{example_digest}')
    alg, dig = ref.parsed_digest_tag

    assert alg == 'sha256'
    assert dig == example_digest.split(':')[-1]


def test_oci_image_manifest_serialisation():
    manifest = om.OciImageManifest(
        config=om.OciBlobRef(
            digest='',
            mediaType='',
            size=0,
        ),
        layers=[
            om.OciBlobRef(
                digest='',
                mediaType='',
                size=0,
            ),
        ],
    )
    manifest_dict = manifest.as_dict()

    assert 'annotations' not in manifest_dict['config']
    assert 'annotations' not in manifest_dict['layers'][0]

    annotations = {
        'key': 'val',
    }
    manifest = om.OciImageManifest(
        config=om.OciBlobRef(
            digest='',
            mediaType='',
            size=0,
            annotations=annotations,
        ),
        layers=[
            om.OciBlobRef(
                digest='',
                mediaType='',
                size=0,
                annotations=annotations,
            ),
        ],
    )
    manifest_dict = manifest.as_dict()

    assert 'annotations' in manifest_dict['config']
    assert manifest_dict['config']['annotations'] == annotations
    assert 'annotations' in manifest_dict['layers'][0]
    assert manifest_dict['layers'][0]['annotations'] == annotations


def test_oci_image_manifest_list_serialisation():
    manifest_list = om.OciImageManifestList(
        manifests=[
            om.OciImageManifestListEntry(
                digest='',
                mediaType='',
                size=0,
            )
        ]
    )
    manifest_list_dict = manifest_list.as_dict()

    assert 'annotations' not in manifest_list_dict['manifests'][0]
    assert 'platform' not in manifest_list_dict['manifests'][0]

    annotations = {
        'key': 'val',
    }
    platform = om.OciPlatform(
        architecture='amd64',
        os='linux'
    )
    manifest_list = om.OciImageManifestList(
        manifests=[
            om.OciImageManifestListEntry(
                digest='',
                mediaType='',
                size=0,
                annotations=annotations,
                platform=platform,
            )
        ]
    )
    manifest_list_dict = manifest_list.as_dict()

    assert 'annotations' in manifest_list_dict['manifests'][0]
    assert manifest_list_dict['manifests'][0]['annotations'] == annotations

    assert 'platform' in manifest_list_dict['manifests'][0]
    assert manifest_list_dict['manifests'][0]['platform'] == platform.as_dict()


def test_with_tag_suffix():
    ref = om.OciImageReference('example.org/path:1.0')
    assert str(ref.with_tag_suffix('-nydus')) == 'example.org/path:1.0-nydus'

    # absent tag is treated as `latest`
    ref = om.OciImageReference('example.org/path')
    assert str(ref.with_tag_suffix('-nydus')) == 'example.org/path:latest-nydus'

    ref = om.OciImageReference(f'example.org/path@sha256:{example_digest}')
    with pytest.raises(ValueError):
        ref.with_tag_suffix('-nydus')


def test_with_tag():
    ref = om.OciImageReference('example.org/path:1.0')

    assert str(ref.with_tag('2.0')) == 'example.org/path:2.0'
    assert str(ref.with_tag(f'sha256:{example_digest}')) == \
        f'example.org/path@sha256:{example_digest}'


def test_to_oci_mimetype():
    assert om.to_oci_mimetype(om.DOCKER_LAYER_TAR_GZIP_MIME) == om.OCI_LAYER_TAR_GZIP_MIME
    assert om.to_oci_mimetype(om.DOCKER_IMAGE_CONFIG_MIME) == om.OCI_IMAGE_CONFIG_MIME
    assert om.to_oci_mimetype(om.NYDUS_BLOB_MIME) == om.NYDUS_BLOB_MIME

    assert om.is_docker_mimetype(om.DOCKER_MANIFEST_SCHEMA_V2_MIME)
    assert not om.is_docker_mimetype(om.OCI_MANIFEST_SCHEMA_V2_MIME)


def test_platform_normalise():
    platform = om.OciPlatform(os='linux', architecture='x86_64')
    assert platform.normalise().architecture == 'amd64'

    arm64 = om.OciPlatform(os='linux', architecture='aarch64', variant='v8')
    normalised = arm64.normalise()
    assert normalised.architecture == 'arm64'
    assert normalised.variant is None


def test_platform_eq():
    assert om.OciPlatform(os='linux', architecture='x86_64') == \
        om.OciPlatform(os='linux', architecture='amd64')
    assert om.OciPlatform(os='linux', architecture='arm64', variant='v8') == \
        om.OciPlatform(os='linux', architecture='arm64')
    assert om.OciPlatform(os='linux', architecture='arm', variant='v6') != \
        om.OciPlatform(os='linux', architecture='arm', variant='v7')

    # os-features do not affect identity
    nydus_platform = om.OciPlatform(
        os='linux',
        architecture='amd64',
        os_features=('nydus.remoteimage.v1',),
    )
    plain_platform = om.OciPlatform(os='linux', architecture='amd64')
    assert nydus_platform == plain_platform
    assert hash(nydus_platform) == hash(plain_platform)
    assert nydus_platform.has_os_feature('nydus.remoteimage.v1')
    assert not plain_platform.has_os_feature('nydus.remoteimage.v1')


def test_platform_serialisation():
    raw = {
        'architecture': 'amd64',
        'os': 'linux',
        'os.features': ['nydus.remoteimage.v1'],
    }
    platform = om.OciPlatform.from_dict(raw)

    assert platform.os_features == ('nydus.remoteimage.v1',)
    assert platform.as_dict() == raw


def test_as_manifest():
    manifest = om.OciImageManifest(
        config=om.OciBlobRef(digest='sha256:a', mediaType=om.OCI_IMAGE_CONFIG_MIME, size=1),
        layers=[om.OciBlobRef(digest='sha256:b', mediaType=om.OCI_LAYER_TAR_GZIP_MIME, size=2)],
    )
    parsed = om.as_manifest(manifest.as_bytes())
    assert isinstance(parsed, om.OciImageManifest)
    assert parsed.layers == manifest.layers

    index = om.OciImageManifestList(
        manifests=[
            om.OciImageManifestListEntry(
                digest='sha256:c',
                mediaType=om.OCI_MANIFEST_SCHEMA_V2_MIME,
                size=3,
                platform=om.OciPlatform(os='linux', architecture='amd64'),
            ),
        ],
    )
    parsed = om.as_manifest(index.as_bytes())
    assert isinstance(parsed, om.OciImageManifestList)
    assert parsed.manifests[0].platform == om.OciPlatform(os='linux', architecture='amd64')

    with pytest.raises(ValueError):
        om.as_manifest({'mediaType': 'text/plain'})
