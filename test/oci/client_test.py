import base64

import pytest

import oci.client as co
import oci.model as om


def test_append_b64_padding_if_missing():
    def encode_and_decode(octets: bytes):
        encoded = base64.b64encode(octets).decode('utf-8')
        encoded_wo_padding = encoded.strip('=')

        assert encoded == co._append_b64_padding_if_missing(encoded_wo_padding)

    encode_and_decode(b'a')
    encode_and_decode(b'ab')
    encode_and_decode(b'abc')
    encode_and_decode(b'abcd')


def test_oci_routes():
    routes = co.OciRoutes()
    image_ref = om.OciImageReference('example.org:5000/org/repo:1.0')

    assert routes.base_api_url(image_ref) == 'https://example.org:5000/v2/'
    assert routes.artifact_base_url(image_ref) == 'https://example.org:5000/v2/org/repo'
    assert routes.manifest_url(image_ref) == 'https://example.org:5000/v2/org/repo/manifests/1.0'
    assert routes.blob_url(image_ref, digest='sha256:abc') == \
        'https://example.org:5000/v2/org/repo/blobs/sha256:abc'
    assert routes.uploads_url(image_ref) == 'https://example.org:5000/v2/org/repo/blobs/uploads/'

    mount_url = routes.mount_blob_url(
        image_reference=image_ref,
        digest='sha256:abc',
        source_image_reference=om.OciImageReference('example.org:5000/other/repo:2.0'),
    )
    assert mount_url == 'https://example.org:5000/v2/org/repo/blobs/uploads/' \
        '?mount=sha256%3Aabc&from=other%2Frepo'

    plain_routes = co.OciRoutes(plain_http=True)
    assert plain_routes.base_api_url(image_ref) == 'http://example.org:5000/v2/'

    with pytest.raises(ValueError):
        routes.manifest_url(om.OciImageReference('example.org/org/repo'))
