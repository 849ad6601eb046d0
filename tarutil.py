# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import gzip
import hashlib
import logging
import os
import shutil
import tarfile
import typing

logger = logging.getLogger(__name__)


class FilelikeProxy:
    def __init__(self, generator):
        '''
        a fake filelike-object that will mimic the required behaviour (read) "good enough" for
        usage w/ tarfile.open (in stream-mode)
        '''
        self.generator = generator

    def read(self, size: int=-1):
        try:
            return next(self.generator)
        except StopIteration:
            return b''


class _DigestingWriter:
    '''
    wraps a writable file-object, calculating the sha256-digest (and size) of all octets written
    '''
    def __init__(self, fileobj: typing.BinaryIO):
        self.fileobj = fileobj
        self.digest = hashlib.sha256()
        self.size = 0

    def write(self, octets: bytes):
        self.digest.update(octets)
        self.size += len(octets)
        return self.fileobj.write(octets)

    def flush(self):
        self.fileobj.flush()


def _reproducible_tarinfo(name: str, size: int, mode: int=0o444) -> tarfile.TarInfo:
    tarinfo = tarfile.TarInfo(name=name)
    tarinfo.size = size
    tarinfo.mode = mode
    tarinfo.mtime = 0
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ''
    tarinfo.gname = ''
    return tarinfo


def pack_single_file(
    src_path: str | os.PathLike,
    dst_path: str | os.PathLike,
    arcname: str,
) -> tuple[str, str, int]:
    '''
    packs the file at `src_path` into a gzip-compressed tarfile at `dst_path`, using `arcname` as
    member-name (parent-directories are added as explicit members). The output is reproducible:
    equal inputs will always yield byte-identical outputs (timestamps and ownership are zeroed).

    returns a tuple of (compressed digest, uncompressed digest (diff-id), compressed size).
    '''
    with open(dst_path, 'wb') as dst:
        digesting_dst = _DigestingWriter(dst)

        with gzip.GzipFile(
            fileobj=digesting_dst,
            mode='wb',
            mtime=0,
            filename='',
        ) as gz:
            digesting_gz = _DigestingWriter(gz)

            with tarfile.open(
                fileobj=digesting_gz,
                mode='w|',
                format=tarfile.PAX_FORMAT,
            ) as tf:
                parents = []
                head = os.path.dirname(arcname)
                while head:
                    parents.insert(0, head)
                    head = os.path.dirname(head)

                for parent in parents:
                    dir_info = _reproducible_tarinfo(name=parent, size=0, mode=0o755)
                    dir_info.type = tarfile.DIRTYPE
                    tf.addfile(dir_info)

                with open(src_path, 'rb') as src:
                    tf.addfile(
                        _reproducible_tarinfo(name=arcname, size=os.stat(src_path).st_size),
                        fileobj=src,
                    )

    return (
        f'sha256:{digesting_dst.digest.hexdigest()}',
        f'sha256:{digesting_gz.digest.hexdigest()}',
        digesting_dst.size,
    )


def extract_single_file(
    src: str | os.PathLike | typing.BinaryIO,
    arcname: str,
    dst_path: str | os.PathLike,
):
    '''
    extracts the member `arcname` from the (optionally gzip-compressed) tarfile `src` to
    `dst_path`. Raises `KeyError` if there is no such (regular file) member.
    '''
    if isinstance(src, (str, os.PathLike)):
        tf = tarfile.open(name=src, mode='r:*')
    else:
        tf = tarfile.open(fileobj=src, mode='r|*')

    with tf:
        for member in tf:
            if member.name.lstrip('./') != arcname.lstrip('./') or not member.isfile():
                continue

            with tf.extractfile(member) as fobj, open(dst_path, 'wb') as dst:
                shutil.copyfileobj(fobj, dst)
            return

    raise KeyError(f'did not find {arcname=} in tarfile')


def is_gzip(path: str | os.PathLike) -> bool:
    with open(path, 'rb') as f:
        return f.read(2) == b'\x1f\x8b'
