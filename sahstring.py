import typing
from construct import Adapter, Prefixed, GreedyBytes, Int32ul

CODING = "utf-8"

def decode_fixed_length_string(data: typing.Union[bytes, bytearray], coding: str=CODING):
    # names are zero terminated inside their declared length
    if data[-1:] == b"\0":
        data = data[:-1]

    return bytes(data).decode(coding, errors="replace")

class FixedLengthString(Adapter):
    # invalid bytes decode to U+FFFD instead of failing
    def __init__(self, lengthfield=Int32ul, coding: str=CODING):
        super().__init__(Prefixed(lengthfield, GreedyBytes))
        self.coding = coding

    def _decode(self, obj, context, path):
        return decode_fixed_length_string(obj, self.coding)
