import dumpsah
import sys

def list_entries(s: dumpsah.SAH):
    for p, f in s.walk():
        yield f"{f.offset:016x} {f.length:08x} {f.checksum & 0xffffffff:08x} {p}"

if __name__ == "__main__":
    with dumpsah.open_sah(sys.argv[1], sys.argv[2]) as inp:
        for l in list_entries(inp):
            print(l)
