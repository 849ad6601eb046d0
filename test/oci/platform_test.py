import pytest

import oci.model as om
import oci.platform as examinee


def test_parse_platform():
    assert examinee.parse_platform('linux/amd64') == om.OciPlatform(
        os='linux',
        architecture='amd64',
    )

    platform = examinee.parse_platform('linux/arm/v7')
    assert platform.architecture == 'arm'
    assert platform.variant == 'v7'

    # arm64/v8 is normalised to arm64
    assert examinee.parse_platform('linux/arm64/v8').variant is None
    assert examinee.parse_platform('linux/x86_64').architecture == 'amd64'

    for invalid in ('linux', 'linux/', 'foo/amd64', 'linux/foo', 'linux/arm/v7/x'):
        with pytest.raises(ValueError):
            examinee.parse_platform(invalid)


def test_parse_platforms():
    platforms = examinee.parse_platforms('linux/amd64, linux/arm64,linux/amd64')

    assert platforms == (
        om.OciPlatform(os='linux', architecture='amd64'),
        om.OciPlatform(os='linux', architecture='arm64'),
    )

    with pytest.raises(ValueError):
        examinee.parse_platforms(' , ')


def test_host_platform():
    host = examinee.host_platform()

    assert host.os == 'linux'
    assert host == host.normalise()


def test_from_config():
    platform = examinee.from_config({'architecture': 'arm', 'os': 'linux', 'variant': 'v7'})

    assert platform == om.OciPlatform(os='linux', architecture='arm', variant='v7')


def test_platform_filter():
    amd64 = om.OciPlatform(os='linux', architecture='amd64')
    arm64 = om.OciPlatform(os='linux', architecture='arm64')
    armv7 = om.OciPlatform(os='linux', architecture='arm', variant='v7')

    only_amd64 = examinee.PlatformFilter.create(['linux/amd64'])
    assert only_amd64(amd64)
    assert not only_amd64(arm64)

    any_arm = examinee.PlatformFilter.create(['linux/arm', 'linux/arm64'])
    assert any_arm(armv7)
    assert any_arm(arm64)
    assert not any_arm(amd64)

    everything = examinee.PlatformFilter.create(['*/*'])
    assert all(everything(p) for p in (amd64, arm64, armv7))

    with pytest.raises(ValueError):
        examinee.PlatformFilter.create(['linux'])
