import hashlib

import oci.util as ou


def test_normalise_image_reference():
    # do not change fully qualified reference
    reference = 'foo.io/my/image:1.2.3'
    assert ou.normalise_image_reference(reference) == reference

    # prepend default registry (docker.io) if no host given
    reference = 'my/image:1.2.3'
    assert ou.normalise_image_reference(reference)  == 'registry-1.docker.io/' + reference

    # insert 'library' if no "owner" is given
    reference = 'alpine:1.2.3'
    assert ou.normalise_image_reference(reference) == 'registry-1.docker.io/library/' + reference


def test_urljoin():
    assert ou.urljoin('https://example.org') == 'https://example.org'
    assert ou.urljoin('https://example.org/', '/v2/', 'foo') == 'https://example.org/v2/foo'
    assert ou.urljoin('a', 'b/', '/c/') == 'a/b/c/'


def test_digests(tmp_path):
    octets = b'cafebabe'
    expected = 'sha256:' + hashlib.sha256(octets).hexdigest()

    assert ou.sha256_digest(octets) == expected

    path = tmp_path / 'blob'
    path.write_bytes(octets)
    assert ou.file_digest(path, chunk_size=3) == (expected, len(octets))

