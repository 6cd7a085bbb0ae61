#!/usr/bin/env python3
"""
memefsck.py - MEMEfs Filesystem Checker

Reads and checks MEMEfs disk images.  Supports filesystem checking,
superblock display, directory listing, file extraction, and write
operations (add, rm).
"""

import argparse
import os
import sys
import time

import memefs

# =============================================================================
# Constants
# =============================================================================

LAYOUT_FIELDS = (
    ("fs_version", memefs.FS_VERSION),
    ("main_fat", memefs.FAT_MAIN_BEGIN),
    ("main_fat_size", memefs.FAT_NUM_BLOCKS),
    ("backup_fat", memefs.FAT_BACKUP_BEGIN),
    ("backup_fat_size", memefs.FAT_NUM_BLOCKS),
    ("directory_start", memefs.DIRECTORY_BEGIN),
    ("directory_size", memefs.DIRECTORY_NUM_BLOCKS),
    ("num_user_blocks", memefs.USER_DATA_NUM_BLOCKS),
    ("first_user_block", memefs.USER_DATA_BEGIN),
)


# =============================================================================
# Image access
# =============================================================================

def open_image(path):
    """Load an image read-only.  Returns a MemeImage or None."""
    try:
        with open(path, "rb") as fp:
            return memefs.load_image(fp)
    except OSError as e:
        print(f"Error: Cannot open image: {path}: {e}", file=sys.stderr)
    except memefs.LoadError as e:
        print(f"Error: {e}", file=sys.stderr)
    return None


def read_raw_flags(path):
    """Return the on-disk cleanly-unmounted flags (main, backup).

    load_image marks both dirty in memory, so the stored value has to be
    read separately.
    """
    flags = []
    with open(path, "rb") as fp:
        for block in (memefs.SUPERBLOCK_MAIN_BEGIN, memefs.SUPERBLOCK_BACKUP_BEGIN):
            raw = memefs.read_blocks(fp, block)
            flags.append(raw[16] if len(raw) > 16 else None)
    return tuple(flags)


def format_time(bcd):
    t = memefs.timestamp_to_time(bcd)
    if t == 0:
        return "----------------"
    return time.strftime("%Y-%m-%d %H:%M", time.gmtime(t))


def format_mode(mode):
    bits = "rwxrwxrwx"
    perms = "".join(bits[i] if mode & (0o400 >> i) else "-" for i in range(9))
    return "-" + perms


# =============================================================================
# Consistency checks
# =============================================================================

def check_superblocks(image):
    problems = []
    for which, sb in (("main", image.main_superblock), ("backup", image.backup_superblock)):
        for field, expected in LAYOUT_FIELDS:
            value = getattr(sb, field)
            if value != expected:
                problems.append(f"{which} superblock {field} is {value}, expected {expected}")

    main = memefs.pack_superblock(image.main_superblock)
    backup = memefs.pack_superblock(image.backup_superblock)
    if main != backup:
        problems.append("main and backup superblocks differ")
    return problems


def check_fat_mirror(image):
    problems = []
    for i, (main, backup) in enumerate(zip(image.main_fat, image.backup_fat)):
        if main != backup:
            problems.append(f"block {i:02X}: main FAT {main:04X} differs from backup FAT {backup:04X}")
    return problems


def check_fat_links(image):
    fat = memefs.FileAllocationTable(image)
    problems = []
    for i, value in enumerate(image.main_fat):
        if not fat.is_user_block(i):
            if value != memefs.FAT_END:
                problems.append(f"reserved block {i:02X} is not marked reserved ({value:04X})")
            continue
        if value in (memefs.FAT_FREE, memefs.FAT_END):
            continue
        if not fat.is_user_block(value):
            problems.append(f"block {i:02X} refers to an out of range block {value:04X}")
        elif image.main_fat[value] == memefs.FAT_FREE:
            problems.append(f"block {i:02X} refers to a free block {value:02X}")
    return problems


def walk_file_chain(image, start):
    """Follow a chain the hard way.

    Returns (blocks, problem) where problem is None if the chain ends in
    END_OF_CHAIN without leaving the user area or looping.
    """
    fat = memefs.FileAllocationTable(image)
    blocks = []
    seen = set()
    block = start
    while True:
        if not fat.is_user_block(block):
            return blocks, f"chain leaves the user area at {block:04X}"
        if block in seen:
            return blocks, f"chain loops back to block {block:02X}"
        seen.add(block)
        blocks.append(block)
        nxt = image.main_fat[block]
        if nxt == memefs.FAT_END:
            return blocks, None
        if nxt == memefs.FAT_FREE:
            return blocks, f"block {block:02X} is marked free inside the chain"
        block = nxt


def check_files(image):
    """Check every live entry.  Returns (problems, owner map of block -> name)."""
    problems = []
    owners = {}
    names = {}
    for index, entry in enumerate(image.directory):
        if not entry.is_live:
            continue
        name = memefs.name_to_readable(entry.filename)
        label = f"file {name!r} (entry {index})"

        if memefs.check_legal_name(name) != memefs.MEMEFS_OK:
            problems.append(f"{label} has an illegal name and cannot be reached")
        elif name in names:
            problems.append(f"{label} duplicates the name of entry {names[name]}")
        else:
            names[name] = index

        blocks, problem = walk_file_chain(image, entry.start_block)
        if problem:
            problems.append(f"{label}: {problem}")

        for block in blocks:
            if block in owners:
                problems.append(f"block {block:02X} is cross-linked ({owners[block]} and {name})")
            else:
                owners[block] = name

        expected = memefs.FileAllocationTable.chain_length_blocks(entry.size)
        if problem is None and len(blocks) != expected:
            problems.append(f"{label} has wrong length: recorded {entry.size} bytes "
                            f"needs {expected} blocks, chain has {len(blocks)}")
    return problems, owners


def find_lost_blocks(image, owners):
    fat = memefs.FileAllocationTable(image)
    lost = []
    for i in range(fat.first_block, fat.end_block):
        if image.main_fat[i] != memefs.FAT_FREE and i not in owners:
            lost.append(f"block {i:02X} is allocated but belongs to no file")
    return lost


def check_image(image):
    """Run every check; returns a list of problem descriptions."""
    problems = []
    problems += check_superblocks(image)
    problems += check_fat_mirror(image)
    problems += check_fat_links(image)
    file_problems, owners = check_files(image)
    problems += file_problems
    problems += find_lost_blocks(image, owners)
    return problems


# =============================================================================
# Commands
# =============================================================================

def cmd_check(image_path, verbose):
    image = open_image(image_path)
    if image is None:
        return 1

    print("Checking superblocks")
    flags = read_raw_flags(image_path)
    if verbose and memefs.FLAG_DIRTY in flags:
        print("Warning: image was not cleanly unmounted", file=sys.stderr)

    problems = check_image(image)
    for problem in problems:
        print(problem, file=sys.stderr)

    if problems:
        print(f"{len(problems)} error(s) found.")
        return 1
    print("No errors found.")
    return 0


def cmd_info(image_path):
    image = open_image(image_path)
    if image is None:
        return 1

    sb = image.main_superblock
    flags = read_raw_flags(image_path)
    fat = memefs.FileAllocationTable(image)
    directory = memefs.DirectoryTable(image)

    print("=== Superblock (block 255) ===\n")
    print(f"  Signature:     {sb.signature.decode('ascii', errors='replace')}")
    print(f"  Version:       {sb.fs_version}")
    print(f"  Volume label:  {sb.label}")
    print(f"  Created:       {format_time(sb.fs_ctime)} UTC")
    print(f"  State:         {'clean' if flags[0] == memefs.FLAG_CLEAN else 'dirty'}")
    print(f"  Main FAT:      block {sb.main_fat} ({sb.main_fat_size} block)")
    print(f"  Backup FAT:    block {sb.backup_fat} ({sb.backup_fat_size} block)")
    print(f"  Directory:     block {sb.directory_start} ({sb.directory_size} blocks)")
    print(f"  User data:     block {sb.first_user_block} ({sb.num_user_blocks} blocks)")
    print()
    print("=== Usage ===\n")
    print(f"  Free blocks:   {fat.free_count()} of {memefs.USER_DATA_NUM_BLOCKS}")
    print(f"  Free entries:  {directory.free_count()} of {memefs.MAX_FILE_ENTRIES}")
    print()
    return 0


def cmd_ls(image_path):
    image = open_image(image_path)
    if image is None:
        return 1

    print(f"\n/:")
    print(f"{'Mode':<10} {'UID':>5} {'GID':>5} {'Size':>8}  {'Modified':<16}  {'Name':<12}")
    print(f"{'-' * 10} {'-' * 5} {'-' * 5} {'-' * 8}  {'-' * 16}  {'-' * 12}")

    directory = memefs.DirectoryTable(image)
    for _, entry in directory.live_entries():
        name = memefs.name_to_readable(entry.filename)
        print(f"{format_mode(entry.type_permissions)} {entry.uid:>5} {entry.gid:>5} "
              f"{entry.size:>8}  {format_time(entry.timestamp):<16}  {name}")
    return 0


def cmd_extract(image_path, output_dir, verbose):
    image = open_image(image_path)
    if image is None:
        return 1

    os.makedirs(output_dir, exist_ok=True)
    fat = memefs.FileAllocationTable(image)
    data = memefs.FileData(image, fat)
    directory = memefs.DirectoryTable(image)

    errors = 0
    for _, entry in directory.live_entries():
        name = memefs.name_to_readable(entry.filename)
        if memefs.check_legal_name(name) != memefs.MEMEFS_OK:
            print(f"Warning: skipping entry with illegal name {name!r}", file=sys.stderr)
            continue

        out_path = os.path.join(output_dir, name)
        if verbose:
            print(f"Extracting: {out_path} ({entry.size} bytes)")

        content = data.read(entry, entry.size)
        if len(content) != entry.size:
            print(f"Error: {name}: chain holds {len(content)} of {entry.size} bytes",
                  file=sys.stderr)
            errors += 1
        try:
            with open(out_path, "wb") as f:
                f.write(content)
        except OSError as e:
            print(f"Error: Cannot create file: {out_path}: {e}", file=sys.stderr)
            errors += 1
            continue
        mtime = memefs.timestamp_to_time(entry.timestamp)
        if mtime:
            os.utime(out_path, (mtime, mtime))

    print(f"\nExtraction {'complete' if errors == 0 else 'completed with errors'}.")
    return 0 if errors == 0 else 1


def cmd_add(image_path, local_path, dest_name=None):
    try:
        with open(local_path, "rb") as f:
            file_data = f.read()
    except OSError as e:
        print(f"Error: Cannot read file: {local_path}: {e}", file=sys.stderr)
        return 1

    name = dest_name or os.path.basename(local_path)
    try:
        fs = memefs.MemeFS.open_image(image_path, write_through=False)
    except memefs.LoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rc = fs.create(name, memefs.DEFAULT_FILE_MODE, os.getuid(), os.getgid())
    if rc == memefs.MEMEFS_OK and file_data:
        written = fs.write(name, file_data, 0)
        if written != len(file_data):
            rc = written if written < 0 else memefs.ERR_NO_SPACE

    if fs.unmount() != memefs.MEMEFS_OK:
        print(f"Error: Failed to write image: {image_path}", file=sys.stderr)
        return 1
    if rc != memefs.MEMEFS_OK:
        print(f"Error: Cannot add {name}: {os.strerror(-rc)}", file=sys.stderr)
        return 1

    print("File added successfully.")
    return 0


def cmd_rm(image_path, name):
    try:
        fs = memefs.MemeFS.open_image(image_path, write_through=False)
    except memefs.LoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rc = fs.unlink(name)
    if fs.unmount() != memefs.MEMEFS_OK:
        print(f"Error: Failed to write image: {image_path}", file=sys.stderr)
        return 1
    if rc != memefs.MEMEFS_OK:
        print(f"Error: Cannot remove {name}: {os.strerror(-rc)}", file=sys.stderr)
        return 1

    print("Deleted successfully.")
    return 0


# =============================================================================
# Main
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="MEMEfs Filesystem Checker",
        usage="%(prog)s [options] <command> image [args...]",
    )

    parser.add_argument("command", nargs="?", default="check",
                        choices=["check", "info", "ls", "extract", "add", "rm"],
                        help="command to run (default: check)")
    parser.add_argument("image", help="disk image file")
    parser.add_argument("args", nargs="*", help="command arguments")

    parser.add_argument("-w", action="store_true", dest="writing",
                        help="enable write mode")
    parser.add_argument("-q", action="store_false", dest="verbose", default=True,
                        help="quiet (verbose is on by default)")

    args = parser.parse_args()

    if args.command in ("add", "rm") and not args.writing:
        print(f"Error: {args.command} requires -w (write mode)", file=sys.stderr)
        return 1

    if args.command == "check":
        return cmd_check(args.image, args.verbose)
    elif args.command == "info":
        return cmd_info(args.image)
    elif args.command == "ls":
        return cmd_ls(args.image)
    elif args.command == "extract":
        if not args.args:
            print("Error: extract requires output directory argument", file=sys.stderr)
            return 1
        print(f"Extracting files to: {args.args[0]}\n")
        return cmd_extract(args.image, args.args[0], args.verbose)
    elif args.command == "add":
        if not args.args:
            print("Error: add requires FILE argument", file=sys.stderr)
            return 1
        dest = args.args[1] if len(args.args) > 1 else None
        print(f"Adding file: {args.args[0]}")
        return cmd_add(args.image, args.args[0], dest)
    elif args.command == "rm":
        if not args.args:
            print("Error: rm requires NAME argument", file=sys.stderr)
            return 1
        print(f"Deleting: {args.args[0]}")
        return cmd_rm(args.image, args.args[0])
    return 0


if __name__ == "__main__":
    sys.exit(main())
