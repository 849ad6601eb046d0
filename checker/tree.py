# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
filesystem-views for structural comparison of images

a view is a sequence of `Entry`s in pre-order (parents before children, siblings sorted by name),
which is the order in which `compare` traverses views. Views of OCI images are built in memory
from the image's layer-tarfiles (applying OCI whiteouts), views of mounted filesystems are read
lazily from the mountpoint.
'''

import collections.abc
import dataclasses
import enum
import hashlib
import logging
import os
import stat
import tarfile
import typing

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = '.wh.'
WHITEOUT_OPAQUE = '.wh..wh..opq'


class EntryType(enum.Enum):
    DIRECTORY = 'directory'
    REGULAR = 'regular'
    SYMLINK = 'symlink'
    CHARDEV = 'chardev'
    BLOCKDEV = 'blockdev'
    FIFO = 'fifo'
    SOCKET = 'socket'


@dataclasses.dataclass(frozen=True)
class Entry:
    '''
    path: absolute path within view (e.g. `/etc/passwd`)
    size: size of regular files (zero otherwise)
    digest: sha256-digest of regular files' contents, or of symlinks' targets
    '''
    path: str
    type: EntryType
    size: int = 0
    digest: str | None = None


class DivergenceKind(enum.Enum):
    MISSING = 'missing'   # present in source, absent in target
    EXTRA = 'extra'       # absent in source, present in target
    TYPE = 'type'
    SIZE = 'size'
    DIGEST = 'digest'


@dataclasses.dataclass(frozen=True)
class Divergence:
    path: str
    kind: DivergenceKind
    source: Entry | None = None
    target: Entry | None = None

    def __str__(self):
        if self.kind is DivergenceKind.MISSING:
            return f'{self.path}: missing in target'
        if self.kind is DivergenceKind.EXTRA:
            return f'{self.path}: not present in source'
        if self.kind is DivergenceKind.TYPE:
            source_type, target_type = self.source.type.value, self.target.type.value
            return f'{self.path}: type differs ({source_type} != {target_type})'
        if self.kind is DivergenceKind.SIZE:
            return f'{self.path}: size differs ({self.source.size} != {self.target.size})'
        return f'{self.path}: content differs ({self.source.digest} != {self.target.digest})'


def sort_key(path: str) -> tuple[str, ...]:
    '''
    key yielding pre-order w/ siblings sorted by name
    '''
    return tuple(part for part in path.split('/') if part)


def normpath(path: str) -> str:
    if path.startswith('./'):
        path = path[2:]
    return os.path.normpath('/' + path.lstrip('/'))


def _sha256(fileobj: typing.BinaryIO, chunk_size: int=1024 * 1024) -> str:
    digest = hashlib.sha256()
    while (chunk := fileobj.read(chunk_size)):
        digest.update(chunk)
    return f'sha256:{digest.hexdigest()}'


def _link_digest(target: str) -> str:
    return f'sha256:{hashlib.sha256(target.encode("utf-8")).hexdigest()}'


class LayeredTree:
    '''
    in-memory filesystem-view of a layered (OCI) image. Layers must be applied in order
    (lowest first).
    '''
    def __init__(self):
        self.entries: dict[str, Entry] = {
            '/': Entry(path='/', type=EntryType.DIRECTORY),
        }

    def _remove_subtree(self, path: str, keep_root: bool=False):
        prefix = path.rstrip('/') + '/'
        for existing in [p for p in self.entries if p.startswith(prefix)]:
            del self.entries[existing]
        if not keep_root and path != '/':
            self.entries.pop(path, None)

    def _ensure_parents(self, path: str):
        parent = os.path.dirname(path)
        while parent != '/' and not parent in self.entries:
            self.entries[parent] = Entry(path=parent, type=EntryType.DIRECTORY)
            parent = os.path.dirname(parent)

    def _entry(self, member: tarfile.TarInfo, tf: tarfile.TarFile, path: str) -> Entry:
        if member.isdir():
            return Entry(path=path, type=EntryType.DIRECTORY)
        if member.issym():
            return Entry(path=path, type=EntryType.SYMLINK, digest=_link_digest(member.linkname))
        if member.islnk():
            link_target = self.entries.get(normpath(member.linkname))
            if not link_target:
                raise ValueError(f'hardlink {path} refers to absent {member.linkname}')
            return dataclasses.replace(link_target, path=path)
        if member.ischr():
            return Entry(path=path, type=EntryType.CHARDEV)
        if member.isblk():
            return Entry(path=path, type=EntryType.BLOCKDEV)
        if member.isfifo():
            return Entry(path=path, type=EntryType.FIFO)
        if member.isfile():
            with tf.extractfile(member) as fobj:
                digest = _sha256(fobj)
            return Entry(path=path, type=EntryType.REGULAR, size=member.size, digest=digest)

        raise ValueError(f'unsupported tar-member-type {member.type=} for {path}')

    def apply_layer(self, tf: tarfile.TarFile):
        '''
        applies the given (opened) layer-tarfile. Whiteouts of a layer only affect lower layers.
        '''
        removals = []
        opaque_dirs = []
        additions: dict[str, Entry] = {}

        for member in tf:
            path = normpath(member.name)
            dirname, basename = os.path.split(path)

            if basename == WHITEOUT_OPAQUE:
                opaque_dirs.append(dirname)
                continue
            if basename.startswith(WHITEOUT_PREFIX):
                removals.append(os.path.join(dirname, basename[len(WHITEOUT_PREFIX):]))
                continue
            if path == '/':
                continue

            if member.islnk():
                link_path = normpath(member.linkname)
                if (link_target := additions.get(link_path)):
                    additions[path] = dataclasses.replace(link_target, path=path)
                    continue

            additions[path] = self._entry(member=member, tf=tf, path=path)

        for opaque_dir in opaque_dirs:
            self._remove_subtree(opaque_dir, keep_root=True)
        for removal in removals:
            self._remove_subtree(removal)

        for path, entry in additions.items():
            existing = self.entries.get(path)
            if existing and existing.type is EntryType.DIRECTORY \
                    and entry.type is not EntryType.DIRECTORY:
                self._remove_subtree(path)
            self._ensure_parents(path)
            self.entries[path] = entry

    def __iter__(self) -> collections.abc.Iterator[Entry]:
        for path in sorted(self.entries, key=sort_key):
            if path == '/':
                continue
            yield self.entries[path]


def walk_directory(root: str) -> collections.abc.Generator[Entry, None, None]:
    '''
    lazily yields entries of the directory-tree below `root` in pre-order (siblings sorted by
    name); `root` itself is not yielded
    '''
    def walk(dirpath: str, viewpath: str):
        for name in sorted(os.listdir(dirpath)):
            path = os.path.join(dirpath, name)
            entry_path = f'{viewpath.rstrip("/")}/{name}'
            st = os.lstat(path)

            if stat.S_ISDIR(st.st_mode):
                yield Entry(path=entry_path, type=EntryType.DIRECTORY)
                yield from walk(path, entry_path)
            elif stat.S_ISLNK(st.st_mode):
                yield Entry(
                    path=entry_path,
                    type=EntryType.SYMLINK,
                    digest=_link_digest(os.readlink(path)),
                )
            elif stat.S_ISREG(st.st_mode):
                with open(path, 'rb') as f:
                    digest = _sha256(f)
                yield Entry(
                    path=entry_path,
                    type=EntryType.REGULAR,
                    size=st.st_size,
                    digest=digest,
                )
            elif stat.S_ISCHR(st.st_mode):
                yield Entry(path=entry_path, type=EntryType.CHARDEV)
            elif stat.S_ISBLK(st.st_mode):
                yield Entry(path=entry_path, type=EntryType.BLOCKDEV)
            elif stat.S_ISFIFO(st.st_mode):
                yield Entry(path=entry_path, type=EntryType.FIFO)
            elif stat.S_ISSOCK(st.st_mode):
                yield Entry(path=entry_path, type=EntryType.SOCKET)

    yield from walk(root, '/')


def _diverges(source: Entry, target: Entry) -> Divergence | None:
    if source.type is not target.type:
        kind = DivergenceKind.TYPE
    elif source.size != target.size:
        kind = DivergenceKind.SIZE
    elif source.digest != target.digest:
        kind = DivergenceKind.DIGEST
    else:
        return None

    return Divergence(path=source.path, kind=kind, source=source, target=target)


def compare(
    source: collections.abc.Iterable[Entry],
    target: collections.abc.Iterable[Entry],
) -> Divergence | None:
    '''
    compares the given views (both expected in pre-order w/ sorted siblings), returning the first
    divergence found, or `None` if both views are equivalent. Traversal stops at the first
    divergence.
    '''
    source = iter(source)
    target = iter(target)
    src_entry = next(source, None)
    tgt_entry = next(target, None)

    while src_entry or tgt_entry:
        if not tgt_entry:
            return Divergence(path=src_entry.path, kind=DivergenceKind.MISSING, source=src_entry)
        if not src_entry:
            return Divergence(path=tgt_entry.path, kind=DivergenceKind.EXTRA, target=tgt_entry)

        src_key = sort_key(src_entry.path)
        tgt_key = sort_key(tgt_entry.path)

        if src_key < tgt_key:
            return Divergence(path=src_entry.path, kind=DivergenceKind.MISSING, source=src_entry)
        if tgt_key < src_key:
            return Divergence(path=tgt_entry.path, kind=DivergenceKind.EXTRA, target=tgt_entry)

        if (divergence := _diverges(src_entry, tgt_entry)):
            return divergence

        src_entry = next(source, None)
        tgt_entry = next(target, None)

    return None
