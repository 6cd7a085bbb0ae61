#!/usr/bin/env python3
"""
mkmemefs.py - MEMEfs Disk Formatter

Writes a blank MEMEfs image (256 x 512-byte blocks) to a file, creating
it if needed.  Both superblocks, both FATs and the empty directory are
laid down; every FAT index outside the user data area is marked reserved.

Optionally copies the regular files of a host directory into the new
image (--extra-files).  MEMEfs has a single flat directory, so host
subdirectories and files without a legal 8.3 name are skipped.
"""

import argparse
import os
import struct
import sys

import memefs


# ============================================================================
# Data structures
# ============================================================================

class HostFile:
    __slots__ = ("name", "data", "mode", "uid", "gid", "mtime")

    def __init__(self, name, data, mode=memefs.DEFAULT_FILE_MODE, uid=0, gid=0, mtime=None):
        self.name = name
        self.data = data
        self.mode = mode
        self.uid = uid
        self.gid = gid
        self.mtime = mtime


# ============================================================================
# Image construction
# ============================================================================

def make_volume_label(label):
    """Encode a volume label as 16 NUL-padded ASCII bytes.

    Raises ValueError if the label is not ASCII or is too long.
    """
    try:
        raw = label.encode("ascii")
    except UnicodeEncodeError:
        raise ValueError(f"Volume label must be ASCII: '{label}'")
    if len(raw) > memefs.VOLUME_LABEL_SIZE:
        raise ValueError(f"Volume label too long ({len(raw)} bytes, "
                         f"max {memefs.VOLUME_LABEL_SIZE}): '{label}'")
    return raw.ljust(memefs.VOLUME_LABEL_SIZE, b"\x00")


def make_superblock(volume_label=b"", ctime=None):
    sb = memefs.Superblock()
    sb.cleanly_unmounted = memefs.FLAG_CLEAN
    sb.fs_ctime = memefs.generate_timestamp(ctime)
    sb.volume_label = volume_label.ljust(memefs.VOLUME_LABEL_SIZE, b"\x00")
    return memefs.pack_superblock(sb)


def make_fat():
    """Blank FAT: user data blocks free, every other index reserved."""
    fat = [memefs.FAT_END] * memefs.MAX_FAT_ENTRIES
    for block in range(memefs.USER_DATA_BEGIN,
                       memefs.USER_DATA_BEGIN + memefs.USER_DATA_NUM_BLOCKS):
        fat[block] = memefs.FAT_FREE
    return struct.pack(memefs.FAT_FORMAT, *fat)


def build_image(volume_label="", ctime=None, verbose=False):
    """Return the bytes of a freshly formatted, empty MEMEfs image."""
    label = make_volume_label(volume_label)
    image = bytearray(memefs.IMAGE_SIZE)

    superblock = make_superblock(label, ctime)
    for block in (memefs.SUPERBLOCK_MAIN_BEGIN, memefs.SUPERBLOCK_BACKUP_BEGIN):
        off = block * memefs.BLOCK_SIZE
        image[off:off + memefs.BLOCK_SIZE] = superblock
        if verbose:
            print(f"  Superblock at block {block} (offset 0x{off:X})")

    fat = make_fat()
    for block in (memefs.FAT_MAIN_BEGIN, memefs.FAT_BACKUP_BEGIN):
        off = block * memefs.BLOCK_SIZE
        image[off:off + memefs.BLOCK_SIZE] = fat
        if verbose:
            print(f"  FAT at block {block} (offset 0x{off:X})")

    if verbose:
        print(f"  Directory: blocks {memefs.DIRECTORY_TOP}-{memefs.DIRECTORY_BEGIN} "
              f"({memefs.MAX_FILE_ENTRIES} entries)")
        print(f"  User data: blocks {memefs.USER_DATA_BEGIN}-"
              f"{memefs.USER_DATA_BEGIN + memefs.USER_DATA_NUM_BLOCKS - 1}")

    return bytes(image)


def write_image(path, data):
    with open(path, "wb") as f:
        f.write(data)


# ============================================================================
# Extra files
# ============================================================================

def load_extra_files(directory):
    """Load the legally named regular files at the top of a host directory.

    Returns a list of HostFile sorted by name.
    """
    if not os.path.isdir(directory):
        raise ValueError(f"Extra files directory not found: {directory}")

    files = []
    for item in sorted(os.scandir(directory), key=lambda e: e.name):
        if item.is_dir(follow_symlinks=False):
            print(f"Warning: skipping directory {item.path}: MEMEfs has no subdirectories",
                  file=sys.stderr)
            continue
        if not item.is_file(follow_symlinks=False):
            continue
        if memefs.check_legal_name(item.name) != memefs.MEMEFS_OK:
            print(f"Warning: skipping {item.path}: not a legal 8.3 name", file=sys.stderr)
            continue

        st = item.stat()
        with open(item.path, "rb") as fh:
            data = fh.read()
        files.append(HostFile(item.name, data, st.st_mode & 0o7777,
                              st.st_uid, st.st_gid, st.st_mtime))
    return files


def count_blocks(files):
    return sum(memefs.FileAllocationTable.chain_length_blocks(len(f.data)) for f in files)


def install_files(fs, files, verbose=False):
    """Create and fill each HostFile on a mounted MemeFS.  Returns error count."""
    errors = 0
    for f in files:
        rc = fs.create(f.name, f.mode, f.uid, f.gid)
        if rc != memefs.MEMEFS_OK:
            print(f"Error: cannot create {f.name}: {os.strerror(-rc)}", file=sys.stderr)
            errors += 1
            continue
        if f.data:
            rc = fs.write(f.name, f.data, 0)
            if rc != len(f.data):
                reason = os.strerror(-rc) if rc < 0 else f"short write ({rc} bytes)"
                print(f"Error: cannot write {f.name}: {reason}", file=sys.stderr)
                errors += 1
                continue
        if f.mtime is not None:
            fs.utimens(f.name, f.mtime)
        if verbose:
            print(f"  {f.name}: {len(f.data)} bytes")
    return errors


# ============================================================================
# Main
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Format a file as a MEMEfs disk image"
    )
    parser.add_argument("image_file", help="Image file to create or overwrite")
    parser.add_argument("--volume-label", default="",
                        help=f"Volume label (ASCII, max {memefs.VOLUME_LABEL_SIZE} characters)")
    parser.add_argument("--extra-files", metavar="DIR",
                        help="Copy the files at the top of DIR into the image")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Show detailed output")
    parser.add_argument("-n", "--dry-run", action="store_true",
                        help="Show what would be written without modifying the image")

    args = parser.parse_args()

    try:
        image = build_image(args.volume_label, verbose=args.verbose)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    extra = []
    if args.extra_files:
        try:
            extra = load_extra_files(args.extra_files)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        blocks = count_blocks(extra)
        print(f"Extra files: {len(extra)} from {args.extra_files} ({blocks} blocks)")
        if len(extra) > memefs.MAX_FILE_ENTRIES:
            print(f"Error: too many files ({len(extra)}) for the directory "
                  f"({memefs.MAX_FILE_ENTRIES} max)", file=sys.stderr)
            return 1
        if blocks > memefs.USER_DATA_NUM_BLOCKS:
            print(f"Error: files need {blocks} blocks but only "
                  f"{memefs.USER_DATA_NUM_BLOCKS} available", file=sys.stderr)
            return 1

    print(f"Image: {args.image_file} ({memefs.IMAGE_SIZE} bytes, {memefs.TOTAL_BLOCKS} blocks)")

    if args.dry_run:
        print("\nDry run - no changes made.")
        return 0

    print("\nFormatting...")
    try:
        write_image(args.image_file, image)
    except OSError as e:
        print(f"Error: Cannot write image: {args.image_file}: {e}", file=sys.stderr)
        return 1

    if extra:
        try:
            fs = memefs.MemeFS.open_image(args.image_file, write_through=False)
        except memefs.LoadError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        errors = install_files(fs, extra, args.verbose)
        if fs.unmount() != memefs.MEMEFS_OK or errors:
            return 1

    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
