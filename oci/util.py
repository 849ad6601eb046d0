# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import hashlib
import os


def normalise_image_reference(image_reference: str):
    if not isinstance(image_reference, str):
        raise ValueError(image_reference)

    parts = image_reference.split('/')

    left_part = parts[0]
    host = left_part.split(':')[0]
    # heuristically check if we have a (potentially) valid hostname (or host:port)
    is_host = len(parts) > 1 and ('.' in host or ':' in left_part or host == 'localhost')
    if not is_host:
        # insert 'library' if only image name was given
        if len(parts) == 1:
            parts.insert(0, 'library')

        # probably, the first part is not a hostname; inject default registry host
        parts.insert(0, 'registry-1.docker.io')

    # of course, docker.io gets special handling
    if parts[0] == 'docker.io':
        parts[0] = 'registry-1.docker.io'

    return '/'.join(parts)


def urljoin(*parts):
    if len(parts) == 1:
        return parts[0]
    first = parts[0]
    last = parts[-1]
    middle = parts[1:-1]

    first = first.rstrip('/')
    middle = list(map(lambda s: s.strip('/'), middle))
    last = last.lstrip('/')

    return '/'.join([first] + middle + [last])


def sha256_digest(octets: bytes) -> str:
    return f'sha256:{hashlib.sha256(octets).hexdigest()}'


def file_digest(
    path: str | os.PathLike,
    chunk_size: int=1024 * 1024,
) -> tuple[str, int]:
    '''
    returns digest (in `<alg>:<hexdigest>` format) and size of the file at the given path
    '''
    digest = hashlib.sha256()
    octets_count = 0

    with open(path, 'rb') as f:
        while (chunk := f.read(chunk_size)):
            digest.update(chunk)
            octets_count += len(chunk)

    return f'sha256:{digest.hexdigest()}', octets_count
