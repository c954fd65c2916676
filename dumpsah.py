from construct import *
from dataclasses import dataclass
import collections
import contextlib
import string
import sys
import os
import io
import typing
import hexdump

from sahstring import FixedLengthString

SAH_MAGIC = b"SAH"

DEFAULT_HEADER_NAME = "data.sah"
DEFAULT_DATA_NAME = "data.saf"
DEFAULT_ROOT_NAME = "data"

# header preamble after the magic, none of it is read by the client
UNKNOWN_SIZE = 4
FILE_COUNT_SIZE = 4
RESERVED_SIZE = 40

class SAHFormatError(ValueError):
    pass

# the client only folds A-Z
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)

def _name_matches(name: str, part: str):
    return name.translate(_ASCII_LOWER) == part.translate(_ASCII_LOWER)

@dataclass(frozen=True)
class File():
    name: str
    offset: int
    length: int
    checksum: int

@dataclass(frozen=True)
class Folder():
    name: str
    files: typing.Tuple[File, ...] = ()
    subfolders: typing.Tuple["Folder", ...] = ()

    def _match(self, parts: typing.Deque[str]):
        # a file named by any remaining segment wins over descending
        for part in list(parts):
            for f in self.files:
                if _name_matches(f.name, part):
                    return f

            for d in self.subfolders:
                if _name_matches(d.name, part):
                    parts.popleft()
                    return d

        return None

    def get(self, parts: typing.Deque[str]) -> typing.Optional[File]:
        node = self._match(parts)
        while isinstance(node, Folder):
            node = node._match(parts)

        return node

class FileAdapter(Adapter):
    def _decode(self, obj, context, path):
        return File(obj.name, int(obj.offset), int(obj.length), int(obj.checksum))

file_data = FileAdapter(Struct(
    "name" / FixedLengthString(),
    "offset" / Hex(Int64ul),
    "length" / Hex(Int32ul),
    "checksum" / Int32sl,
))

# one folder block up to its sub-folders, which follow it depth first
folder_head_data = Struct(
    "name" / FixedLengthString(),
    "files" / PrefixedArray(Int32ul, file_data),
    "folder_count" / Int32ul,
)

sah_header_data = Struct(
    "magic" / Const(SAH_MAGIC),
    "unknown" / Padding(UNKNOWN_SIZE),
    "file_count" / Padding(FILE_COUNT_SIZE),
    "reserved" / Padding(RESERVED_SIZE),
)

def parse_folder_stream(stream) -> Folder:
    pending = [(folder_head_data.parse_stream(stream), [])]

    while True:
        head, children = pending[-1]
        if len(children) < head.folder_count:
            pending.append((folder_head_data.parse_stream(stream), []))
            continue

        pending.pop()
        folder = Folder(head.name, tuple(head.files), tuple(children))
        if not pending:
            return folder

        pending[-1][1].append(folder)

class SAH():
    def __init__(self, header_file, data_file, parse_tree: bool=True):
        self.header_file = header_file
        self.data_file = data_file
        self.root = Folder(DEFAULT_ROOT_NAME)
        self.pwd = "/"

        if parse_tree:
            self.parse()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.header_file.close()
        self.data_file.close()

    def parse(self):
        self.header_file.seek(0)
        data = self.header_file.read()
        stream = io.BytesIO(data)

        try:
            sah_header_data.parse_stream(stream)
            root = parse_folder_stream(stream)

        except ConstError as e:
            raise SAHFormatError(f"invalid SAH magic value: {data[:len(SAH_MAGIC)]!r} - expected {SAH_MAGIC!r}") from e

        except StreamError as e:
            raise SAHFormatError(f"truncated header: {e}") from e

        except ConstructError as e:
            raise SAHFormatError(str(e)) from e

        self.root = root
        self.pwd = "/"

    def get(self, path: str) -> typing.Optional[File]:
        return self.root.get(collections.deque(path.split("/")))

    def read_at(self, offset: int, length: int) -> bytes:
        size = self.data_file.seek(0, io.SEEK_END)
        if offset < 0 or length < 0 or offset + length > size:
            raise IOError(f"range {offset:08x}+{length:x} is outside the data file ({size:08x} bytes)")

        self.data_file.seek(offset)
        temp = bytearray()
        while len(temp) < length:
            t = self.data_file.read(length - len(temp))
            if not t:
                raise IOError(f"short read at {offset + len(temp):08x}: got {len(temp):x} of {length:x} bytes")

            temp += t

        return bytes(temp)

    def read(self, entry: File) -> bytes:
        return self.read_at(entry.offset, entry.length)

    def resolve(self, pathname: str):
        parts = [] if pathname.startswith("/") else [p for p in self.pwd.split("/") if p]

        for p in pathname.split("/"):
            if p in [".", ""]:
                continue

            elif p == "..":
                if parts: parts.pop()

            else:
                parts.append(p)

        node = self.root
        fPath = []

        for p in parts:
            if not isinstance(node, Folder): raise NotADirectoryError(pathname)

            matchNode = next((d for d in node.subfolders if _name_matches(d.name, p)), None)
            if matchNode is None:
                matchNode = next((f for f in node.files if _name_matches(f.name, p)), None)

            if matchNode is None: raise FileNotFoundError(pathname)

            node = matchNode
            fPath.append(node.name)

        return node, "/" + "/".join(fPath)

    def resolve_folder(self, pathname: str):
        node, fPath = self.resolve(pathname)
        if not isinstance(node, Folder):
            raise NotADirectoryError(pathname)

        return node, fPath

    def cd(self, pathname: str):
        _, self.pwd = self.resolve_folder(pathname)

    def ls(self, pathname: str=""):
        node, _ = self.resolve(pathname)
        if isinstance(node, File):
            return [node.name]

        return [f.name for f in node.files] + [d.name + "/" for d in node.subfolders]

    def _walk(self, folder: Folder, prefix: str=""):
        pending = [(prefix, folder)]

        while pending:
            p, d = pending.pop()
            if d is not folder:
                yield p, d

            for f in d.files:
                yield p + f.name, f

            pending.extend((p + sub.name + "/", sub) for sub in reversed(d.subfolders))

    def ls_recursive(self, pathname: str=""):
        folder, fPath = self.resolve_folder(pathname)
        prefix = fPath.strip("/") + "/" if fPath != "/" else ""
        return [p for p, _ in self._walk(folder, prefix)]

    def walk(self):
        for p, node in self._walk(self.root):
            if isinstance(node, File):
                yield p, node

    def open(self, pathname: str):
        node, _ = self.resolve(pathname)
        if isinstance(node, Folder):
            raise IsADirectoryError(pathname)

        return SAFReader(self, node)

class SAFReader(io.RawIOBase):
    def __init__(self, sah: SAH, entry: File):
        self.sah = sah
        self.entry = entry
        self.offset = 0

    def readable(self):
        return True

    def seekable(self):
        return True

    def read(self, count=-1):
        if self.closed: raise ValueError("I/O operation on closed file")
        if self.offset >= self.entry.length or count == 0: return b""

        read_count = self.entry.length - self.offset
        if count is not None and count >= 0:
            read_count = min(count, read_count)

        temp = self.sah.read_at(self.entry.offset + self.offset, read_count)
        self.offset += read_count
        return temp

    def readinto(self, b):
        temp = self.read(len(b))
        b[:len(temp)] = temp
        return len(temp)

    def tell(self):
        return self.offset

    def seek(self, offset: int, where: int=io.SEEK_SET):
        if where == io.SEEK_SET:
            target = offset

        elif where == io.SEEK_CUR:
            target = self.offset + offset

        elif where == io.SEEK_END:
            target = self.entry.length + offset

        else:
            raise ValueError(f"invalid whence ({where})")

        if target < 0: raise ValueError(f"negative seek position {target}")

        self.offset = target
        return self.offset

    def close(self):
        super().close()
        self.sah = None

def open_sah(header_path, data_path):
    with contextlib.ExitStack() as stack:
        header_file = stack.enter_context(open(header_path, "rb"))
        data_file = stack.enter_context(open(data_path, "rb"))

        s = SAH(header_file, data_file)
        stack.pop_all()
        return s

def create_sah(directory):
    header_path = os.path.join(directory, DEFAULT_HEADER_NAME)
    data_path = os.path.join(directory, DEFAULT_DATA_NAME)

    # refuse before creating anything
    if os.path.exists(header_path):
        raise FileExistsError(header_path)

    elif os.path.exists(data_path):
        raise FileExistsError(data_path)

    header_file = open(header_path, "x+b")
    try:
        data_file = open(data_path, "x+b")

    except OSError:
        header_file.close()
        os.remove(header_path)
        raise

    return SAH(header_file, data_file, parse_tree=False)

def dump_zip(s: SAH, zip_path):
    import zipfile
    import traceback

    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for p, node in s._walk(s.root):
            print(p)
            try:
                if isinstance(node, Folder):
                    zf.writestr(p, b"")

                else:
                    zf.writestr(p, s.read(node))

            except Exception as e:
                traceback.print_exc()
                print(f"error: {e}")

def _is_safe_name(name: str):
    if name in ["", ".", ".."]:
        return False

    return not any(sep and sep in name for sep in ["/", os.sep, os.altsep])

def _dump_folder(s: SAH, folder: Folder, dest: str):
    os.makedirs(dest, exist_ok=True)
    pending = [(folder, dest)]

    while pending:
        d, target = pending.pop()

        for f in d.files:
            if not _is_safe_name(f.name):
                print(f"skipping {f.name!r}: unsafe name")
                continue

            with open(os.path.join(target, f.name), "wb") as o:
                o.write(s.read(f))

        for sub in d.subfolders:
            if not _is_safe_name(sub.name):
                print(f"skipping {sub.name!r}/: unsafe name")
                continue

            os.makedirs(os.path.join(target, sub.name), exist_ok=True)
            pending.append((sub, os.path.join(target, sub.name)))

def _cmd_ls(s: SAH, args):
    for k in args or [""]:
        if len(args) > 1: print(f"{k}:")
        for l in s.ls(k):
            print(l)

def _cmd_cd(s: SAH, args):
    if len(args) > 1:
        print("cd: too many arguments")

    elif args:
        s.cd(args[0])

def _cmd_pwd(s: SAH, args):
    print(s.pwd)

def _cmd_cat(s: SAH, args):
    for f in args:
        sys.stdout.buffer.write(s.open(f).read())

    sys.stdout.buffer.flush()

def _cmd_hexdump(s: SAH, args):
    for f in args:
        hexdump.hexdump(s.open(f).read())

def _cmd_dump(s: SAH, args):
    if len(args) != 2:
        print("dump: usage: dump file destination | dump dir/* destination")

    elif args[0].endswith("*"):
        folder, _ = s.resolve_folder(args[0].rstrip("*"))
        _dump_folder(s, folder, args[1])

    else:
        t = s.open(args[0])
        if os.path.dirname(args[1]):
            os.makedirs(os.path.dirname(args[1]), exist_ok=True)

        with open(args[1], "wb") as o:
            o.write(t.read())

def _cmd_help(s: SAH, args):
    for name, (_, usage) in _SHELL_COMMANDS.items():
        print(f"{name} {usage}")

    print("exit")

_SHELL_COMMANDS = {
    "ls": (_cmd_ls, "[paths...] (list a folder, the working folder by default)"),
    "cd": (_cmd_cd, "[dir] (change the working folder)"),
    "pwd": (_cmd_pwd, "(print the working folder)"),
    "cat": (_cmd_cat, "files... (write file contents to stdout)"),
    "hexdump": (_cmd_hexdump, "files... (hexdump file contents)"),
    "hd": (_cmd_hexdump, "files... (short for hexdump)"),
    "dump": (_cmd_dump, "file destination | dir/* destination (save to disk)"),
    "help": (_cmd_help, "(show this message)"),
}

def _do_sah_shell(s: SAH, source: str=""):
    import shlex

    print(f"SAH shell: {source}")

    while True:
        try:
            line = input(f"[{s.pwd}]> ")

        except EOFError:
            print()
            break

        try:
            cmd = shlex.split(line)
            if not cmd:
                continue

            if cmd[0] == "exit":
                break

            if cmd[0] not in _SHELL_COMMANDS:
                print(f"{cmd[0]}: command not found")
                continue

            func, _ = _SHELL_COMMANDS[cmd[0]]
            func(s, cmd[1:])

        except Exception as e:
            print(f"{line.split()[0] if line.split() else ''}: {type(e).__name__}: {e}")

if __name__ == "__main__":
    if len(sys.argv) < 3:
        print(f"usage: {sys.argv[0]} data.sah data.saf [output.zip]")
        sys.exit(1)

    with open_sah(sys.argv[1], sys.argv[2]) as s:
        if len(sys.argv) == 3:
            _do_sah_shell(s, sys.argv[1])

        else:
            dump_zip(s, sys.argv[3])
