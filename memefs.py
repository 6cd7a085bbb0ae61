#!/usr/bin/env python3
"""
memefs.py - MEMEfs filesystem driver core

Loads a MEMEfs disk image into memory and exposes the path-addressed
operation set (getattr, readdir, open, create, read, write, unlink,
truncate, ...) that a virtual-filesystem bridge forwards to.  Every
mutating operation writes the whole in-memory image back to the backing
file.

Disk layout (256 blocks x 512 bytes = 128 KiB):
    Block 0         Backup superblock
    Blocks 1-220    User data
    Blocks 221-238  Unused
    Block 239       Backup FAT
    Blocks 240-253  Directory (224 entries, filled from block 253 down)
    Block 254       Main FAT
    Block 255       Main superblock

All multi-byte values are big-endian.  FAT indices are absolute block
numbers; only the user data blocks are ever allocated.
"""

import calendar
import errno
import math
import stat
import struct
import sys
import threading
import time

# =============================================================================
# Constants
# =============================================================================

BLOCK_SIZE = 512
TOTAL_BLOCKS = 256
IMAGE_SIZE = BLOCK_SIZE * TOTAL_BLOCKS

SUPERBLOCK_BACKUP_BEGIN = 0
SUPERBLOCK_MAIN_BEGIN = 255
FAT_BACKUP_BEGIN = 239
FAT_MAIN_BEGIN = 254
FAT_NUM_BLOCKS = 1
DIRECTORY_BEGIN = 253
DIRECTORY_NUM_BLOCKS = 14
DIRECTORY_TOP = DIRECTORY_BEGIN - DIRECTORY_NUM_BLOCKS + 1
USER_DATA_BEGIN = 1
USER_DATA_NUM_BLOCKS = 220

FILE_ENTRY_SIZE = 32
ENTRIES_PER_BLOCK = BLOCK_SIZE // FILE_ENTRY_SIZE
MAX_FILE_ENTRIES = DIRECTORY_NUM_BLOCKS * ENTRIES_PER_BLOCK
MAX_FAT_ENTRIES = BLOCK_SIZE * FAT_NUM_BLOCKS // 2

SIGNATURE = b"?MEMEFS++CMSC421"
FS_VERSION = 1
VOLUME_LABEL_SIZE = 16

SUPERBLOCK_FORMAT = ">16sB3sI8sHHHHHHHH16s448s"
FILE_ENTRY_FORMAT = ">HH11sB8sIHH"
FAT_FORMAT = f">{MAX_FAT_ENTRIES}H"

# Superblock cleanly-unmounted flag
FLAG_CLEAN = 0x00
FLAG_DIRTY = 0xFF

# FAT entry values
FAT_FREE = 0x0000
FAT_END = 0xFFFF

# Filenames
MAX_BASE_LENGTH = 8
MAX_EXT_LENGTH = 3
MAX_FILENAME_LENGTH = MAX_BASE_LENGTH + 1 + MAX_EXT_LENGTH
ENCODED_NAME_LENGTH = MAX_BASE_LENGTH + MAX_EXT_LENGTH
LEGAL_NAME_SYMBOLS = "^-_=|"

TIMESTAMP_SIZE = 8

ROOT_MODE = stat.S_IFDIR | 0o755
DEFAULT_FILE_MODE = 0o644

# Result codes (negative errno, as the bridge expects)
MEMEFS_OK = 0
ERR_INVALID_NAME = -errno.EINVAL
ERR_INVALID_ARGUMENT = -errno.EINVAL
ERR_NAME_TOO_LONG = -errno.ENAMETOOLONG
ERR_NOT_FOUND = -errno.ENOENT
ERR_EXISTS = -errno.EEXIST
ERR_DIR_FULL = -errno.ENFILE
ERR_NO_SPACE = -errno.ENOSPC
ERR_IS_ROOT = -errno.EISDIR
ERR_IO = -errno.EIO


class LoadError(Exception):
    """Raised when an image cannot be mounted."""


# =============================================================================
# Data structures
# =============================================================================

class Superblock:
    __slots__ = ("signature", "cleanly_unmounted", "reserved", "fs_version",
                 "fs_ctime", "main_fat", "main_fat_size", "backup_fat",
                 "backup_fat_size", "directory_start", "directory_size",
                 "num_user_blocks", "first_user_block", "volume_label",
                 "unused")

    def __init__(self):
        self.signature = SIGNATURE
        self.cleanly_unmounted = FLAG_CLEAN
        self.reserved = bytes(3)
        self.fs_version = FS_VERSION
        self.fs_ctime = bytes(TIMESTAMP_SIZE)
        self.main_fat = FAT_MAIN_BEGIN
        self.main_fat_size = FAT_NUM_BLOCKS
        self.backup_fat = FAT_BACKUP_BEGIN
        self.backup_fat_size = FAT_NUM_BLOCKS
        self.directory_start = DIRECTORY_BEGIN
        self.directory_size = DIRECTORY_NUM_BLOCKS
        self.num_user_blocks = USER_DATA_NUM_BLOCKS
        self.first_user_block = USER_DATA_BEGIN
        self.volume_label = bytes(VOLUME_LABEL_SIZE)
        self.unused = bytes(448)

    @property
    def label(self):
        return self.volume_label.split(b"\x00", 1)[0].decode("ascii", errors="replace")


class FileEntry:
    __slots__ = ("type_permissions", "start_block", "filename", "unused",
                 "timestamp", "size", "uid", "gid")

    def __init__(self):
        self.type_permissions = 0
        self.start_block = 0
        self.filename = bytes(ENCODED_NAME_LENGTH)
        self.unused = 0
        self.timestamp = bytes(TIMESTAMP_SIZE)
        self.size = 0
        self.uid = 0
        self.gid = 0

    @property
    def is_live(self):
        return self.type_permissions != 0


class MemeImage:
    """The whole filesystem held in memory."""

    def __init__(self):
        self.main_superblock = Superblock()
        self.backup_superblock = Superblock()
        self.directory = [FileEntry() for _ in range(MAX_FILE_ENTRIES)]
        self.main_fat = [FAT_FREE] * MAX_FAT_ENTRIES
        self.backup_fat = [FAT_FREE] * MAX_FAT_ENTRIES
        self.user_data = bytearray(USER_DATA_NUM_BLOCKS * BLOCK_SIZE)

    @property
    def superblocks(self):
        return (self.main_superblock, self.backup_superblock)


# =============================================================================
# Record packing
# =============================================================================

def unpack_superblock(raw):
    sb = Superblock()
    (sb.signature, sb.cleanly_unmounted, sb.reserved, sb.fs_version,
     sb.fs_ctime, sb.main_fat, sb.main_fat_size, sb.backup_fat,
     sb.backup_fat_size, sb.directory_start, sb.directory_size,
     sb.num_user_blocks, sb.first_user_block, sb.volume_label,
     sb.unused) = struct.unpack(SUPERBLOCK_FORMAT, raw)
    return sb


def pack_superblock(sb):
    return struct.pack(
        SUPERBLOCK_FORMAT, sb.signature, sb.cleanly_unmounted, sb.reserved,
        sb.fs_version, sb.fs_ctime, sb.main_fat, sb.main_fat_size,
        sb.backup_fat, sb.backup_fat_size, sb.directory_start,
        sb.directory_size, sb.num_user_blocks, sb.first_user_block,
        sb.volume_label, sb.unused)


def unpack_file_entry(raw):
    entry = FileEntry()
    (entry.type_permissions, entry.start_block, entry.filename, entry.unused,
     entry.timestamp, entry.size, entry.uid,
     entry.gid) = struct.unpack(FILE_ENTRY_FORMAT, raw)
    return entry


def pack_file_entry(entry):
    return struct.pack(
        FILE_ENTRY_FORMAT, entry.type_permissions, entry.start_block,
        entry.filename, entry.unused, entry.timestamp, entry.size,
        entry.uid, entry.gid)


def directory_entry_offset(index):
    """Byte offset of directory entry *index* within the directory region.

    The region is read as blocks 240..253; entry 0 sits at the start of
    block 253 and each block holds 16 consecutive entries.
    """
    block = DIRECTORY_BEGIN - index // ENTRIES_PER_BLOCK
    return (block - DIRECTORY_TOP) * BLOCK_SIZE + (index % ENTRIES_PER_BLOCK) * FILE_ENTRY_SIZE


def data_offset(block):
    """Byte offset of allocator index *block* within the user data region."""
    return (block - USER_DATA_BEGIN) * BLOCK_SIZE


# =============================================================================
# Image I/O
# =============================================================================

def read_blocks(fp, block, count=1):
    fp.seek(block * BLOCK_SIZE)
    return fp.read(count * BLOCK_SIZE)


def write_blocks(fp, block, data):
    fp.seek(block * BLOCK_SIZE)
    written = fp.write(data)
    if written is not None and written != len(data):
        raise OSError(errno.EIO, f"Short write at block {block}: "
                                 f"{written} of {len(data)} bytes")


def _read_exact(fp, block, count, what):
    buf = read_blocks(fp, block, count)
    if len(buf) != count * BLOCK_SIZE:
        raise LoadError(f"Failed to read {what}: got {len(buf)} of "
                        f"{count * BLOCK_SIZE} bytes at block {block}")
    return buf


def load_superblock(fp, block, which):
    raw = _read_exact(fp, block, 1, f"{which} superblock")
    sb = unpack_superblock(raw)
    if sb.signature != SIGNATURE:
        raise LoadError(f"Invalid filesystem signature in {which} superblock: "
                        f"{sb.signature!r}")
    sb.reserved = bytes(3)
    sb.unused = bytes(448)
    return sb


def load_directory(fp):
    raw = _read_exact(fp, DIRECTORY_TOP, DIRECTORY_NUM_BLOCKS, "directory")
    directory = []
    for i in range(MAX_FILE_ENTRIES):
        off = directory_entry_offset(i)
        directory.append(unpack_file_entry(raw[off:off + FILE_ENTRY_SIZE]))
    return directory


def load_fat(fp, block, which):
    raw = _read_exact(fp, block, FAT_NUM_BLOCKS, f"{which} FAT")
    return list(struct.unpack(FAT_FORMAT, raw))


def load_user_data(fp):
    return bytearray(_read_exact(fp, USER_DATA_BEGIN, USER_DATA_NUM_BLOCKS, "user data"))


def load_image(fp, verbose=False):
    """Read every region of the image into a MemeImage.

    Raises LoadError on a short read or a bad signature.  Both
    superblocks are marked dirty in memory until unmount.
    """
    image = MemeImage()
    image.main_superblock = load_superblock(fp, SUPERBLOCK_MAIN_BEGIN, "main")
    image.backup_superblock = load_superblock(fp, SUPERBLOCK_BACKUP_BEGIN, "backup")
    if verbose:
        print("  Loaded superblocks")

    image.directory = load_directory(fp)
    if verbose:
        live = sum(1 for entry in image.directory if entry.is_live)
        print(f"  Loaded directory ({live} of {MAX_FILE_ENTRIES} entries in use)")

    image.main_fat = load_fat(fp, FAT_MAIN_BEGIN, "main")
    image.backup_fat = load_fat(fp, FAT_BACKUP_BEGIN, "backup")
    if verbose:
        print(f"  Loaded FATs (main at block {FAT_MAIN_BEGIN}, backup at block {FAT_BACKUP_BEGIN})")

    image.user_data = load_user_data(fp)
    if verbose:
        print(f"  Loaded user data ({USER_DATA_NUM_BLOCKS} blocks)")

    for sb in image.superblocks:
        sb.cleanly_unmounted = FLAG_DIRTY
    return image


def pack_directory(directory):
    buf = bytearray(DIRECTORY_NUM_BLOCKS * BLOCK_SIZE)
    for i, entry in enumerate(directory):
        off = directory_entry_offset(i)
        buf[off:off + FILE_ENTRY_SIZE] = pack_file_entry(entry)
    return bytes(buf)


def persist_image(fp, image):
    """Write the whole in-memory image back.  Raises OSError on failure."""
    write_blocks(fp, USER_DATA_BEGIN, bytes(image.user_data))
    write_blocks(fp, FAT_MAIN_BEGIN, struct.pack(FAT_FORMAT, *image.main_fat))
    write_blocks(fp, FAT_BACKUP_BEGIN, struct.pack(FAT_FORMAT, *image.backup_fat))
    write_blocks(fp, DIRECTORY_TOP, pack_directory(image.directory))
    write_blocks(fp, SUPERBLOCK_MAIN_BEGIN, pack_superblock(image.main_superblock))
    write_blocks(fp, SUPERBLOCK_BACKUP_BEGIN, pack_superblock(image.backup_superblock))
    fp.flush()


# =============================================================================
# Filename handling
# =============================================================================

def _is_legal_char(ch):
    return (ch.isascii() and ch.isalnum()) or ch in LEGAL_NAME_SYMBOLS


def check_legal_name(name):
    """Validate a readable "base.ext" name (an optional leading "/" is allowed).

    Returns MEMEFS_OK, ERR_INVALID_NAME or ERR_NAME_TOO_LONG.
    """
    if name.startswith("/"):
        name = name[1:]
    if len(name) > MAX_FILENAME_LENGTH:
        return ERR_NAME_TOO_LONG
    if "." not in name:
        return ERR_INVALID_NAME

    base, _, ext = name.partition(".")
    if not base or not ext or "." in ext:
        return ERR_INVALID_NAME
    if not all(_is_legal_char(ch) for ch in base + ext):
        return ERR_INVALID_NAME
    if len(base) > MAX_BASE_LENGTH or len(ext) > MAX_EXT_LENGTH:
        return ERR_NAME_TOO_LONG
    return MEMEFS_OK


def name_to_encoded(name):
    """Convert "base.ext" to the 11-byte on-disk name.

    Raises ValueError if the name is not legal.
    """
    if check_legal_name(name) != MEMEFS_OK:
        raise ValueError(f"Illegal filename '{name}'")
    base, _, ext = name.lstrip("/").partition(".")
    return (base.encode("ascii").ljust(MAX_BASE_LENGTH, b"\x00") +
            ext.encode("ascii").ljust(MAX_EXT_LENGTH, b"\x00"))


def name_to_readable(raw):
    """Convert an 11-byte on-disk name to "base.ext"."""
    base = raw[:MAX_BASE_LENGTH].split(b"\x00", 1)[0]
    ext = raw[MAX_BASE_LENGTH:ENCODED_NAME_LENGTH].split(b"\x00", 1)[0]
    return (base + b"." + ext).decode("latin-1")


# =============================================================================
# BCD timestamps
# =============================================================================

def to_bcd(num):
    if num > 99:
        return 0xFF
    return ((num // 10) << 4) | (num % 10)


def from_bcd(byte):
    hi, lo = byte >> 4, byte & 0x0F
    if hi > 9 or lo > 9:
        raise ValueError(f"Not a BCD byte: 0x{byte:02X}")
    return hi * 10 + lo


def generate_timestamp(when=None):
    """Pack a UTC time (epoch seconds, default now) into 8 BCD bytes."""
    if when is None:
        when = time.time()
    t = time.gmtime(when)
    return bytes([
        to_bcd(t.tm_year // 100),   # century
        to_bcd(t.tm_year % 100),    # year within century
        to_bcd(t.tm_mon),
        to_bcd(t.tm_mday),
        to_bcd(t.tm_hour),
        to_bcd(t.tm_min),
        to_bcd(t.tm_sec),
        0x00,                       # reserved
    ])


def timestamp_to_time(bcd):
    """Convert 8 BCD bytes back to epoch seconds; 0 if unset or malformed."""
    if len(bcd) != TIMESTAMP_SIZE or not any(bcd):
        return 0
    try:
        century, year, month, day, hour, minute, second = (from_bcd(b) for b in bcd[:7])
        return calendar.timegm((century * 100 + year, month, day, hour, minute, second, 0, 0, 0))
    except (ValueError, OverflowError):
        return 0


# =============================================================================
# Block allocator
# =============================================================================

class FileAllocationTable:
    """Chain allocator over the main FAT, mirrored into the backup FAT."""

    def __init__(self, image):
        self.image = image
        self.first_block = USER_DATA_BEGIN
        self.end_block = USER_DATA_BEGIN + USER_DATA_NUM_BLOCKS

    def get(self, index):
        return self.image.main_fat[index]

    def set_entry(self, index, value):
        self.image.main_fat[index] = value
        self.image.backup_fat[index] = value

    def is_user_block(self, index):
        return self.first_block <= index < self.end_block

    @staticmethod
    def chain_length_blocks(size):
        return max(1, math.ceil(size / BLOCK_SIZE))

    def free_count(self):
        return sum(1 for i in range(self.first_block, self.end_block)
                   if self.image.main_fat[i] == FAT_FREE)

    def find_free_blocks(self, count):
        """First-fit: the lowest *count* free indices (fewer if short)."""
        found = []
        for i in range(self.first_block, self.end_block):
            if len(found) == count:
                break
            if self.image.main_fat[i] == FAT_FREE:
                found.append(i)
        return found

    def _link(self, blocks):
        for cur, nxt in zip(blocks, blocks[1:]):
            self.set_entry(cur, nxt)
        self.set_entry(blocks[-1], FAT_END)

    def walk_chain(self, start):
        """Yield the block indices of the chain starting at *start*.

        Stops at END_OF_CHAIN, at any link leaving the user data range,
        and after MAX_FAT_ENTRIES steps.
        """
        index = start
        for _ in range(MAX_FAT_ENTRIES):
            if not self.is_user_block(index):
                return
            yield index
            nxt = self.image.main_fat[index]
            if nxt in (FAT_END, FAT_FREE):
                return
            index = nxt

    def last_block(self, start):
        last = start
        for last in self.walk_chain(start):
            pass
        return last

    def allocate_chain(self, n_blocks):
        """Allocate a new chain of *n_blocks*; returns its first index or ERR_NO_SPACE."""
        if n_blocks < 1:
            raise ValueError(f"Cannot allocate a chain of {n_blocks} blocks")
        blocks = self.find_free_blocks(n_blocks)
        if len(blocks) < n_blocks:
            return ERR_NO_SPACE
        self._link(blocks)
        return blocks[0]

    def extend_chain(self, last_index, n_new_blocks):
        if n_new_blocks <= 0:
            return MEMEFS_OK
        blocks = self.find_free_blocks(n_new_blocks)
        if len(blocks) < n_new_blocks:
            return ERR_NO_SPACE
        self._link(blocks)
        self.set_entry(last_index, blocks[0])
        return MEMEFS_OK

    def truncate_chain(self, start, keep_blocks):
        """Keep the first *keep_blocks* blocks of a chain, free the rest."""
        keep_blocks = max(1, keep_blocks)
        chain = list(self.walk_chain(start))
        if keep_blocks >= len(chain):
            return MEMEFS_OK
        self.set_entry(chain[keep_blocks - 1], FAT_END)
        for index in chain[keep_blocks:]:
            self.set_entry(index, FAT_FREE)
        return MEMEFS_OK

    def free_chain(self, start):
        for index in list(self.walk_chain(start)):
            self.set_entry(index, FAT_FREE)


# =============================================================================
# Directory table
# =============================================================================

class DirectoryTable:
    def __init__(self, image):
        self.image = image

    def live_entries(self):
        for index, entry in enumerate(self.image.directory):
            if entry.is_live:
                yield index, entry

    def find(self, name):
        """Return the index of the live entry called *name*, or an error code.

        Names that fail validation are rejected before the scan, so an
        entry stored under an illegal name can never be found.
        """
        rc = check_legal_name(name)
        if rc != MEMEFS_OK:
            return rc
        name = name.lstrip("/")
        for index, entry in self.live_entries():
            if name_to_readable(entry.filename) == name:
                return index
        return ERR_NOT_FOUND

    def free_slot(self):
        for index, entry in enumerate(self.image.directory):
            if not entry.is_live:
                return index
        return ERR_DIR_FULL

    def free_count(self):
        return sum(1 for entry in self.image.directory if not entry.is_live)

    def insert(self, name, start_block, mode=DEFAULT_FILE_MODE, uid=0, gid=0, timestamp=None):
        index = self.free_slot()
        if index < 0:
            return index

        entry = FileEntry()
        entry.type_permissions = stat.S_IFREG | (mode & 0o7777)
        entry.start_block = start_block
        entry.filename = name_to_encoded(name)
        entry.timestamp = timestamp if timestamp is not None else generate_timestamp()
        entry.uid = uid & 0xFFFF
        entry.gid = gid & 0xFFFF
        self.image.directory[index] = entry
        return index

    def remove(self, index):
        # Other fields stay behind until the slot is reused.
        self.image.directory[index].type_permissions = 0

    def names(self):
        """Readable names of live entries whose stored names are legal."""
        result = []
        for _, entry in self.live_entries():
            name = name_to_readable(entry.filename)
            if check_legal_name(name) == MEMEFS_OK:
                result.append(name)
        return result


# =============================================================================
# File data
# =============================================================================

class FileData:
    """Reads and writes file contents through the allocator."""

    def __init__(self, image, fat):
        self.image = image
        self.fat = fat

    def _fill_block(self, block, offset, chunk):
        """Copy *chunk* into *block* at *offset* and zero the rest of the block."""
        base = data_offset(block)
        end = offset + len(chunk)
        self.image.user_data[base + offset:base + end] = chunk
        self.image.user_data[base + end:base + BLOCK_SIZE] = bytes(BLOCK_SIZE - end)

    def clear_block(self, block):
        self._fill_block(block, 0, b"")

    def _zero_from(self, entry, position):
        """Zero every byte of the entry's chain from byte *position* onward."""
        for i, block in enumerate(self.fat.walk_chain(entry.start_block)):
            block_start = i * BLOCK_SIZE
            if block_start + BLOCK_SIZE <= position:
                continue
            offset = max(0, position - block_start)
            self._fill_block(block, offset, b"")

    def read(self, entry, length, offset=0):
        if length <= 0 or offset < 0 or offset >= entry.size:
            return b""
        length = min(length, entry.size - offset)

        out = bytearray()
        skip, block_offset = divmod(offset, BLOCK_SIZE)
        for i, block in enumerate(self.fat.walk_chain(entry.start_block)):
            if i < skip:
                continue
            base = data_offset(block)
            take = min(BLOCK_SIZE - block_offset, length - len(out))
            out += self.image.user_data[base + block_offset:base + block_offset + take]
            block_offset = 0
            if len(out) >= length:
                break
        return bytes(out)

    def append(self, entry, data):
        """Append *data* to the file, growing the chain one block at a time.

        Returns the number of bytes appended, which is short of len(data)
        if the allocator runs dry part way; whatever was written stays and
        entry.size counts it.  Returns ERR_NO_SPACE if nothing fit.
        """
        if not data:
            return 0

        last = self.fat.last_block(entry.start_block)
        used = entry.size % BLOCK_SIZE
        room = BLOCK_SIZE - used if (used or entry.size == 0) else 0

        written = 0
        if room:
            chunk = data[:room]
            self._fill_block(last, used, chunk)
            written = len(chunk)
            entry.size += written

        while written < len(data):
            if self.fat.extend_chain(last, 1) != MEMEFS_OK:
                return written if written else ERR_NO_SPACE
            last = self.fat.get(last)
            chunk = data[written:written + BLOCK_SIZE]
            self._fill_block(last, 0, chunk)
            written += len(chunk)
            entry.size += len(chunk)

        return written

    def overwrite(self, entry, data):
        """Replace the whole content with *data*.

        The old content is dropped before the append, so running out of
        space part way leaves a shorter file, not the old one.  Returns
        what append returns.
        """
        self.fat.truncate_chain(entry.start_block, 1)
        entry.size = 0
        self.clear_block(entry.start_block)
        return self.append(entry, data)

    def truncate(self, entry, new_size):
        in_use = self.fat.chain_length_blocks(entry.size)
        needed = self.fat.chain_length_blocks(new_size)

        if needed < in_use:
            self.fat.truncate_chain(entry.start_block, needed)
        elif needed > in_use:
            if self.fat.free_count() < needed - in_use:
                return ERR_NO_SPACE
            rc = self.fat.extend_chain(self.fat.last_block(entry.start_block), needed - in_use)
            if rc != MEMEFS_OK:
                return rc

        self._zero_from(entry, min(entry.size, new_size))
        entry.size = new_size
        entry.timestamp = generate_timestamp()
        return MEMEFS_OK


# =============================================================================
# Filesystem operations
# =============================================================================

def is_root(path):
    return path == "/" or path == ""


class MemeFS:
    """Path-addressed operations over a mounted image.

    Every public method holds one lock for its whole duration.  Results
    are payloads on success or negative errno codes on failure.  With
    write_through=False, mutations are only written on sync() and
    unmount().
    """

    def __init__(self, fp, image, write_through=True, verbose=False):
        self.fp = fp
        self.image = image
        self.fat = FileAllocationTable(image)
        self.directory = DirectoryTable(image)
        self.data = FileData(image, self.fat)
        self.write_through = write_through
        self.verbose = verbose
        self.lock = threading.RLock()
        self.mounted = True
        self.pending = False

    @classmethod
    def mount(cls, fp, write_through=True, verbose=False):
        """Load an image from an open binary file.  Raises LoadError."""
        image = load_image(fp, verbose)
        return cls(fp, image, write_through=write_through, verbose=verbose)

    @classmethod
    def open_image(cls, path, write_through=True, verbose=False):
        try:
            fp = open(path, "r+b")
        except OSError as e:
            raise LoadError(f"Cannot open image: {path}: {e}")
        try:
            return cls.mount(fp, write_through=write_through, verbose=verbose)
        except LoadError:
            fp.close()
            raise

    # -------------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # -------------------------------------------------------------------------

    def _persist(self, force=False):
        if not self.mounted:
            return ERR_IO
        if not (self.write_through or force):
            self.pending = True
            return MEMEFS_OK
        try:
            persist_image(self.fp, self.image)
        except OSError as e:
            print(f"Error: Failed to write image: {e}", file=sys.stderr)
            return ERR_IO
        self.pending = False
        return MEMEFS_OK

    def _lookup(self, path):
        """Return (index, entry); index is an error code if not found."""
        index = self.directory.find(path)
        if index < 0:
            return index, None
        return index, self.image.directory[index]

    def _lookup_data(self, path):
        """Like _lookup, but ERR_IO for a record whose chain starts outside
        the user data area."""
        index, entry = self._lookup(path)
        if index >= 0 and not self.fat.is_user_block(entry.start_block):
            print(f"Error: {path}: start block {entry.start_block} is outside "
                  f"the user data area", file=sys.stderr)
            return ERR_IO, None
        return index, entry

    def _attrs(self, entry):
        mtime = timestamp_to_time(entry.timestamp)
        return dict(
            st_mode=entry.type_permissions,
            st_nlink=1,
            st_size=entry.size,
            st_uid=entry.uid,
            st_gid=entry.gid,
            st_atime=mtime,
            st_mtime=mtime,
            st_ctime=mtime,
            st_blocks=self.fat.chain_length_blocks(entry.size),
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def volume_label(self):
        return self.image.main_superblock.label

    def free_count(self):
        with self.lock:
            return self.fat.free_count()

    def getattr(self, path):
        with self.lock:
            if is_root(path):
                ctime = timestamp_to_time(self.image.main_superblock.fs_ctime)
                return dict(st_mode=ROOT_MODE, st_nlink=2, st_size=0,
                            st_uid=0, st_gid=0, st_atime=ctime,
                            st_mtime=ctime, st_ctime=ctime, st_blocks=0)
            index, entry = self._lookup(path)
            if index < 0:
                return index
            return self._attrs(entry)

    def readdir(self, path="/"):
        with self.lock:
            if not is_root(path):
                return ERR_NOT_FOUND
            return [".", ".."] + self.directory.names()

    def open(self, path):
        with self.lock:
            if is_root(path):
                return MEMEFS_OK
            index, _ = self._lookup(path)
            return index if index < 0 else MEMEFS_OK

    def read(self, path, size, offset=0):
        with self.lock:
            if is_root(path):
                return ERR_IS_ROOT
            if offset < 0:
                return ERR_INVALID_ARGUMENT
            index, entry = self._lookup_data(path)
            if index < 0:
                return index
            return self.data.read(entry, size, offset)

    def statfs(self):
        with self.lock:
            free = self.fat.free_count()
            return dict(
                f_bsize=BLOCK_SIZE,
                f_frsize=BLOCK_SIZE,
                f_blocks=USER_DATA_NUM_BLOCKS,
                f_bfree=free,
                f_bavail=free,
                f_files=MAX_FILE_ENTRIES,
                f_ffree=self.directory.free_count(),
                f_favail=self.directory.free_count(),
                f_namemax=MAX_FILENAME_LENGTH,
            )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create(self, path, mode=DEFAULT_FILE_MODE, uid=0, gid=0):
        with self.lock:
            if not self.mounted:
                return ERR_IO
            if is_root(path):
                return ERR_EXISTS
            rc = check_legal_name(path)
            if rc != MEMEFS_OK:
                return rc
            if self.directory.find(path) >= 0:
                return ERR_EXISTS
            if self.directory.free_slot() < 0:
                return ERR_DIR_FULL

            start = self.fat.allocate_chain(1)
            if start < 0:
                return start
            self.data.clear_block(start)
            self.directory.insert(path.lstrip("/"), start, mode, uid, gid)
            if self.verbose:
                print(f"  Created {path} at block {start}")
            return self._persist()

    def write(self, path, data, offset):
        """Write *data* at *offset*; returns the byte count written or an error.

        offset == size appends.  offset < size cuts the file back to
        *offset* bytes first, so anything after the written range is
        dropped.  Any other offset is rejected.
        """
        with self.lock:
            if not self.mounted:
                return ERR_IO
            if is_root(path):
                return ERR_IS_ROOT
            index, entry = self._lookup_data(path)
            if index < 0:
                return index

            if offset == entry.size:
                rc = self.data.append(entry, data)
            elif 0 <= offset < entry.size:
                final_blocks = self.fat.chain_length_blocks(offset + len(data))
                available = self.fat.free_count() + self.fat.chain_length_blocks(entry.size)
                if final_blocks > available:
                    return ERR_NO_SPACE
                if offset == 0:
                    rc = self.data.overwrite(entry, data)
                else:
                    self.data.truncate(entry, offset)
                    rc = self.data.append(entry, data)
            else:
                return ERR_NOT_FOUND

            written = max(rc, 0)
            entry.timestamp = generate_timestamp()
            prc = self._persist()
            if prc != MEMEFS_OK:
                return prc
            if written < len(data):
                print(f"Warning: {path}: out of space after {written} of "
                      f"{len(data)} bytes", file=sys.stderr)
                return ERR_NO_SPACE
            return written

    def unlink(self, path):
        with self.lock:
            if not self.mounted:
                return ERR_IO
            if is_root(path):
                return ERR_IS_ROOT
            index, entry = self._lookup(path)
            if index < 0:
                return index
            self.fat.free_chain(entry.start_block)
            self.directory.remove(index)
            if self.verbose:
                print(f"  Removed {path}")
            return self._persist()

    def truncate(self, path, length):
        with self.lock:
            if not self.mounted:
                return ERR_IO
            if is_root(path):
                return ERR_IS_ROOT
            if length < 0:
                return ERR_INVALID_ARGUMENT
            index, entry = self._lookup_data(path)
            if index < 0:
                return index
            rc = self.data.truncate(entry, length)
            if rc != MEMEFS_OK:
                return rc
            return self._persist()

    def chown(self, path, uid, gid):
        """Store new owner ids; -1 leaves a field unchanged."""
        with self.lock:
            if not self.mounted:
                return ERR_IO
            if is_root(path):
                return MEMEFS_OK
            index, entry = self._lookup(path)
            if index < 0:
                return index
            if uid != -1:
                entry.uid = uid & 0xFFFF
            if gid != -1:
                entry.gid = gid & 0xFFFF
            return self._persist()

    def utimens(self, path, mtime=None):
        with self.lock:
            if not self.mounted:
                return ERR_IO
            if is_root(path):
                return MEMEFS_OK
            index, entry = self._lookup(path)
            if index < 0:
                return index
            try:
                entry.timestamp = generate_timestamp(mtime)
            except (OverflowError, OSError, ValueError):
                return ERR_INVALID_ARGUMENT
            return self._persist()

    def sync(self):
        with self.lock:
            if not self.mounted:
                return MEMEFS_OK
            return self._persist(force=True)

    def unmount(self):
        """Mark both superblocks clean, write everything, close the image."""
        with self.lock:
            if not self.mounted:
                return MEMEFS_OK
            for sb in self.image.superblocks:
                sb.cleanly_unmounted = FLAG_CLEAN
            rc = self._persist(force=True)
            self.fp.close()
            self.mounted = False
            if self.verbose:
                print("  Unmounted" + ("" if rc == MEMEFS_OK else " (final write failed)"))
            return rc
