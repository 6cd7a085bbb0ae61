#!/usr/bin/env python3
"""
mount_memefs.py - Mount a MEMEfs image with FUSE

Thin bridge between the kernel and memefs.MemeFS: every callback
forwards the path and buffers to the filesystem object and turns a
negative result code into a FuseOSError.

Usage:
    mount_memefs.py <image> <mountpoint> [-f] [--lazy] [-v]
"""

import argparse
import os
import sys

from fuse import FUSE, FuseOSError, Operations, fuse_get_context

import memefs


def check(rc):
    """Raise FuseOSError for a negative result code, else pass it through."""
    if isinstance(rc, int) and rc < 0:
        raise FuseOSError(-rc)
    return rc


class MemeFuse(Operations):
    def __init__(self, fs):
        self.fs = fs

    # Filesystem methods
    # ==================

    def getattr(self, path, fh=None):
        return check(self.fs.getattr(path))

    def readdir(self, path, fh):
        return check(self.fs.readdir(path))

    def statfs(self, path):
        return self.fs.statfs()

    def chown(self, path, uid, gid):
        return check(self.fs.chown(path, uid, gid))

    def utimens(self, path, times=None):
        mtime = times[1] if times else None
        return check(self.fs.utimens(path, mtime))

    def destroy(self, path):
        self.fs.unmount()

    # File methods
    # ============

    def open(self, path, flags):
        check(self.fs.open(path))
        return 0

    def create(self, path, mode, fi=None):
        uid, gid, _ = fuse_get_context()
        check(self.fs.create(path, mode, uid, gid))
        return 0

    def read(self, path, size, offset, fh):
        return check(self.fs.read(path, size, offset))

    def write(self, path, data, offset, fh):
        return check(self.fs.write(path, data, offset))

    def truncate(self, path, length, fh=None):
        return check(self.fs.truncate(path, length))

    def unlink(self, path):
        return check(self.fs.unlink(path))

    def flush(self, path, fh):
        return check(self.fs.sync()) if not self.fs.write_through else 0

    def fsync(self, path, datasync, fh):
        return check(self.fs.sync())

    def release(self, path, fh):
        return 0


def main():
    parser = argparse.ArgumentParser(description="Mount a MEMEfs disk image with FUSE")
    parser.add_argument("image", help="MEMEfs disk image")
    parser.add_argument("mountpoint", help="directory to mount on")
    parser.add_argument("-f", "--foreground", action="store_true",
                        help="stay in the foreground")
    parser.add_argument("--lazy", action="store_true",
                        help="write the image on fsync and unmount only, not after every change")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="show detailed output")

    args = parser.parse_args()

    if not os.path.isdir(args.mountpoint):
        print(f"Error: mount point is not a directory: {args.mountpoint}", file=sys.stderr)
        return 1

    try:
        fs = memefs.MemeFS.open_image(args.image, write_through=not args.lazy,
                                      verbose=args.verbose)
    except memefs.LoadError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Mounting {args.image} ({fs.volume_label or 'no label'}) on {args.mountpoint}")

    try:
        FUSE(MemeFuse(fs), args.mountpoint, foreground=args.foreground,
             nothreads=False)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        fs.unmount()
    return 0


if __name__ == "__main__":
    sys.exit(main())
