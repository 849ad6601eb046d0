import hashlib

import converter.model as examinee
import oci.model as om


def _sha256(value: str) -> str:
    return f'sha256:{hashlib.sha256(value.encode("utf-8")).hexdigest()}'


def test_chain_ids():
    diff_ids = [_sha256('a'), _sha256('b'), _sha256('c')]

    chain_ids = examinee.chain_ids(diff_ids)

    assert len(chain_ids) == 3
    assert chain_ids[0] == diff_ids[0]
    assert chain_ids[1] == _sha256(f'{diff_ids[0]} {diff_ids[1]}')
    assert chain_ids[2] == _sha256(f'{chain_ids[1]} {diff_ids[2]}')

    assert examinee.chain_ids([]) == []
    # chain-ids depend on all lower layers
    assert examinee.chain_ids([diff_ids[1], diff_ids[1]])[1] != chain_ids[1]


def test_is_power_of_two():
    assert examinee.is_power_of_two(1)
    assert examinee.is_power_of_two(0x100000)
    assert not examinee.is_power_of_two(0)
    assert not examinee.is_power_of_two(-2)
    assert not examinee.is_power_of_two(0x100001)


def test_build_signature():
    signature = examinee.BuildSignature(
        fs_version='6',
        compressor='zstd',
        chunk_size=0x100000,
        batch_size=0,
        align_chunk=False,
        oci_ref=False,
        builder_version='2.2.0',
    )

    assert signature.canonical_json().startswith(b'{"align_chunk":false,')
    assert signature.digest().startswith('sha256:')
    assert signature.digest() == examinee.BuildSignature(**vars(signature)).digest()


def test_platform_conversion_error():
    platform = om.OciPlatform(os='linux', architecture='arm64')
    error = examinee.PlatformConversionError(failures={platform: ValueError('boom')})

    assert 'linux/arm64: boom' in str(error)
    assert error.failures[platform].args == ('boom',)
