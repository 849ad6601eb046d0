# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import base64
import collections.abc
import dataclasses
import enum
import json
import logging
import os

import oci.util

logger = logging.getLogger(__name__)


class Privileges(enum.Enum):
    READONLY = 'readonly'
    READWRITE = 'readwrite'


@dataclasses.dataclass(frozen=True)
class OciBasicAuthCredentials:
    username: str
    password: str


# typehint-alias
image_reference = str
credentials_lookup = collections.abc.Callable[
    [image_reference, Privileges, bool],
    OciBasicAuthCredentials | None,
]


def anonymous_credentials_lookup(
    image_reference: str,
    privileges: Privileges=Privileges.READONLY,
    absent_ok: bool=True,
) -> None:
    if not absent_ok:
        raise ValueError(f'no credentials configured for {image_reference=}')
    return None


def _registry_host(netloc: str) -> str:
    netloc = netloc.removeprefix('https://').removeprefix('http://').rstrip('/')
    host = netloc.split('/')[0]
    if host in ('docker.io', 'index.docker.io', 'registry-1.docker.io'):
        return 'registry-1.docker.io'
    return host


def docker_credentials_lookup(
    docker_cfg: str | None=None,
    absent_ok: bool=False,
) -> credentials_lookup:
    '''
    returns a credentials-lookup backed by docker's auth-config. By design, docker's auth-config
    only allows configuring credentials per registry-host. By default, docker-cfg is expected at
    `$HOME/.docker/config.json`.

    if no docker-cfg is found, raises RuntimeError, unless absent_ok is truthy, in which case the
    returned lookup will never return any credentials (which might still be useful for readonly
    operations that for many registries allow anonymous access).

    Note that docker does not offer to configure credentials by permissions, too (hence privileges
    parameter will be ignored)
    '''
    if not docker_cfg:
        docker_cfg = os.path.join(os.environ.get('HOME', ''), '.docker/config.json')

    if not os.path.isfile(docker_cfg):
        if not absent_ok:
            raise RuntimeError(f'not an existing file: {docker_cfg=}')

        logger.info(f'{docker_cfg=} does not exist - will use anonymous access')
        return anonymous_credentials_lookup

    def docker_auth_lookup(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ):
        # re-read docker-cfg to reflect fs-updates
        with open(docker_cfg) as f:
            auths = json.load(f).get('auths', None)

        if not auths:
            if not absent_ok:
                raise ValueError(f'no auth-cfg found in {docker_cfg=} for {image_reference=}')
            return None

        image_host = _registry_host(oci.util.normalise_image_reference(image_reference))

        for netloc, auth_dict in auths.items():
            if _registry_host(netloc) == image_host:
                break
        else:
            if not absent_ok:
                raise ValueError(
                    f'no matching auth-cfg found in {docker_cfg=} for {image_reference=}'
                )
            return None

        if (username := auth_dict.get('username')) and (password := auth_dict.get('password')):
            return OciBasicAuthCredentials(
                username=username,
                password=password,
            )

        if not (auth := auth_dict.get('auth', None)):
            raise ValueError(
                f'did not find expected attr `auth` in {docker_cfg=} for {image_host=}'
            )

        username, passwd = base64.b64decode(auth).decode('utf-8').split(':', 1)

        return OciBasicAuthCredentials(
            username=username,
            password=passwd,
        )

    return docker_auth_lookup
