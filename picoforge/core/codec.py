"""APDU frame codec for the Pico FIDO rescue applet.

Requests are short ISO 7816-4 APDUs whose body is a TLV list (1-byte tag,
1-byte length). Bodies larger than one exchange are split with command
chaining. Responses end in a two-byte status word; ``61xx`` means more data is
waiting and is collected with GET RESPONSE until a terminal status arrives.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from picoforge.core.errors import ContinuationOverrunError, MalformedFrameError

CLA_ISO = 0x00
CLA_PROPRIETARY = 0x80
CLA_CHAINING = 0x10

INS_SELECT = 0xA4
INS_GET_RESPONSE = 0xC0
INS_WRITE = 0x1C
INS_SECURE = 0x1D
INS_READ = 0x1E

RESCUE_AID = bytes.fromhex("A0583FC19B7E4F21")

SW_SUCCESS = 0x9000
SW1_MORE_DATA = 0x61

MAX_SHORT_PAYLOAD = 255
DEFAULT_MAX_CONTINUATIONS = 16

_KNOWN_STATUS = {
    0x9000: "success",
    0x6400: "execution error",
    0x6581: "memory failure",
    0x6700: "wrong length",
    0x6982: "security status not satisfied",
    0x6983: "authentication method blocked",
    0x6985: "conditions of use not satisfied",
    0x6A80: "incorrect data",
    0x6A82: "applet or file not found",
    0x6A84: "not enough memory",
    0x6A86: "incorrect P1/P2",
    0x6A88: "referenced data not found",
    0x6B00: "wrong parameters",
    0x6D00: "instruction not supported",
    0x6E00: "class not supported",
    0x6F00: "unknown device error",
}

# SW1 values whose SW2 carries a count rather than a fixed code.
_STATUS_FAMILIES = {
    SW1_MORE_DATA: "more data available",
    0x63: "warning, counter",
    0x6C: "wrong Le",
}

Exchange = Callable[[bytes], bytes]


@dataclass(frozen=True)
class CommandFrame:
    ins: int
    p1: int = 0
    p2: int = 0
    params: Mapping[int, bytes] = field(default_factory=dict)
    data: bytes = b""
    cla: int = CLA_PROPRIETARY
    le: int | None = None

    def body(self) -> bytes:
        return encode_tlv(self.params) + self.data


@dataclass(frozen=True)
class ResponseFrame:
    data: bytes
    status: int
    chunks: int = 1

    @property
    def ok(self) -> bool:
        return self.status == SW_SUCCESS

    def params(self) -> dict[int, bytes]:
        return decode_tlv(self.data)


def is_known_status(status: int) -> bool:
    return status in _KNOWN_STATUS or (status >> 8) in _STATUS_FAMILIES


def describe_status(status: int) -> str:
    if status in _KNOWN_STATUS:
        return _KNOWN_STATUS[status]
    family = _STATUS_FAMILIES.get(status >> 8)
    if family is not None:
        return f"{family} ({status & 0xFF})"
    return "unrecognized status"


def encode_tlv(params: Mapping[int, bytes]) -> bytes:
    out = bytearray()
    for tag in sorted(params):
        value = params[tag]
        if not 0 <= tag <= 0xFF:
            raise MalformedFrameError(f"TLV tag {tag!r} does not fit in one byte")
        if len(value) > 0xFF:
            raise MalformedFrameError(f"TLV value for tag 0x{tag:02X} exceeds 255 bytes")
        out.append(tag)
        out.append(len(value))
        out.extend(value)
    return bytes(out)


def decode_tlv(data: bytes) -> dict[int, bytes]:
    params: dict[int, bytes] = {}
    i = 0
    while i < len(data):
        if i + 2 > len(data):
            raise MalformedFrameError(f"Truncated TLV header at offset {i}")
        tag = data[i]
        length = data[i + 1]
        i += 2
        if i + length > len(data):
            raise MalformedFrameError(
                f"TLV tag 0x{tag:02X} declares {length} bytes but only {len(data) - i} remain"
            )
        params[tag] = bytes(data[i : i + length])
        i += length
    return params


def encode_command(frame: CommandFrame, *, max_payload: int = MAX_SHORT_PAYLOAD) -> list[bytes]:
    """Serialize ``frame`` into one APDU, or several chained ones if the body is large."""
    if not 1 <= max_payload <= MAX_SHORT_PAYLOAD:
        raise ValueError(f"max_payload must be within 1..{MAX_SHORT_PAYLOAD}")
    body = frame.body()
    chunks = [body[i : i + max_payload] for i in range(0, len(body), max_payload)] or [b""]

    apdus: list[bytes] = []
    for index, chunk in enumerate(chunks):
        last = index == len(chunks) - 1
        cla = frame.cla if last else frame.cla | CLA_CHAINING
        apdu = bytearray([cla, frame.ins, frame.p1, frame.p2])
        if chunk:
            apdu.append(len(chunk))
            apdu.extend(chunk)
        if last and frame.le is not None:
            apdu.append(frame.le & 0xFF)
        apdus.append(bytes(apdu))
    return apdus


def get_response_apdu(length: int) -> bytes:
    return bytes([CLA_ISO, INS_GET_RESPONSE, 0x00, 0x00, length & 0xFF])


def split_status(raw: bytes) -> tuple[bytes, int]:
    if len(raw) < 2:
        raise MalformedFrameError(f"Response of {len(raw)} byte(s) has no status word")
    status = (raw[-2] << 8) | raw[-1]
    if not is_known_status(status):
        raise MalformedFrameError(f"Unrecognized status word {status:04X}")
    return bytes(raw[:-2]), status


def decode(raws: Sequence[bytes], *, max_continuations: int = DEFAULT_MAX_CONTINUATIONS) -> ResponseFrame:
    """Assemble a logical response from the raw responses of one command.

    ``raws`` is the answer to the command itself followed by the answers to
    each GET RESPONSE it triggered.
    """
    if not raws:
        raise MalformedFrameError("No response to decode")
    if len(raws) - 1 > max_continuations:
        raise ContinuationOverrunError(
            f"Response used {len(raws) - 1} continuations (limit {max_continuations})"
        )

    data = bytearray()
    status = SW_SUCCESS
    for index, raw in enumerate(raws):
        chunk, status = split_status(raw)
        data.extend(chunk)
        more = (status >> 8) == SW1_MORE_DATA
        last = index == len(raws) - 1
        if more and last:
            raise MalformedFrameError("Response ends while the device still signals more data")
        if not more and not last:
            raise MalformedFrameError(f"Terminal status {status:04X} before the end of the response")
    return ResponseFrame(data=bytes(data), status=status, chunks=len(raws))


def transceive(
    exchange: Exchange,
    frame: CommandFrame,
    *,
    max_payload: int = MAX_SHORT_PAYLOAD,
    max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
) -> ResponseFrame:
    """Send ``frame`` through ``exchange`` and return the assembled response.

    A chained request stops at the first link the device does not accept, and
    that link's response is returned as-is.
    """
    apdus = encode_command(frame, max_payload=max_payload)
    for apdu in apdus[:-1]:
        data, status = split_status(exchange(apdu))
        if status != SW_SUCCESS:
            return ResponseFrame(data=data, status=status)

    raws = [exchange(apdus[-1])]
    while True:
        _, status = split_status(raws[-1])
        if (status >> 8) != SW1_MORE_DATA:
            break
        if len(raws) > max_continuations:
            raise ContinuationOverrunError(
                f"Device still signals more data after {max_continuations} continuations"
            )
        raws.append(exchange(get_response_apdu(status & 0xFF)))
    return decode(raws, max_continuations=max_continuations)


def select_frame() -> CommandFrame:
    return CommandFrame(cla=CLA_ISO, ins=INS_SELECT, p1=0x04, p2=0x04, data=RESCUE_AID)


def read_frame(p1: int, p2: int = 0x00) -> CommandFrame:
    return CommandFrame(ins=INS_READ, p1=p1, p2=p2, le=0x00)


def write_frame(params: Mapping[int, bytes]) -> CommandFrame:
    return CommandFrame(ins=INS_WRITE, p1=0x01, p2=0x00, params=dict(params))


def secure_frame(key_index: int, lock: bool) -> CommandFrame:
    return CommandFrame(ins=INS_SECURE, p1=key_index, p2=0x01 if lock else 0x00, le=0x00)
