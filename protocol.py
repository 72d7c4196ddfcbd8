import struct
from collections import namedtuple

OP_OPEN=0x01
OP_DATA=0x02
OP_CLOSE=0x03
OPCODES=(OP_OPEN,OP_DATA,OP_CLOSE)

HEADER=struct.Struct("!IBI")
HEADER_SIZE=HEADER.size
MAX_PAYLOAD=65536
MAX_STREAM_ID=0xFFFFFFFF

AUTH_FAILED=b"Authentication failed\n"
MAX_AUTH_LINE=1024

REASON_CLOSED="closed"
REASON_CONNECTION_CLOSED="connection closed"
REASON_CONNECTION_LOST="connection lost"
REASON_FAULT="multiplexer fault"
REASON_LOCAL_UNREACHABLE="local target unreachable"
REASON_STALLED="stream stalled"
REASON_RESET="connection reset"

Opened=namedtuple("Opened","stream_id")
Data=namedtuple("Data","stream_id payload")
Closed=namedtuple("Closed","stream_id reason")

class ProtocolError(ValueError):
    def __init__(self,message,data=b""):
        super().__init__(message)
        self.data=bytes(data)

    def is_auth_rejection(self):
        if len(self.data)<HEADER_SIZE:
            return False
        return AUTH_FAILED.startswith(self.data) or self.data.startswith(AUTH_FAILED)

def pack_header(stream_id,opcode,payload_length):
    return HEADER.pack(stream_id,opcode,payload_length)

def unpack_header(header):
    return HEADER.unpack(header)

def pack_frame(stream_id,opcode,payload=b""):
    return pack_header(stream_id,opcode,len(payload))+payload

def pack_open(stream_id):
    return pack_frame(stream_id,OP_OPEN)

def pack_data(stream_id,data):
    return pack_frame(stream_id,OP_DATA,data)

def pack_close(stream_id,reason=None):
    return pack_frame(stream_id,OP_CLOSE,reason.encode() if reason else b"")

def pack_auth_line(secret):
    return secret.encode()+b"\n"

def unpack_close_reason(payload):
    if not payload:
        return None
    return payload.decode(errors="replace")

class FrameDecoder:
    """Incremental decoder for the post-handshake byte stream.

    feed() accepts arbitrary chunks; frames() yields every complete
    (stream_id,opcode,payload) and keeps the tail for the next feed.
    Header validation happens as soon as nine bytes are available, so an
    oversized length is rejected before its payload arrives.
    """
    def __init__(self,max_payload=MAX_PAYLOAD):
        self.max_payload=max_payload
        self.buffer=bytearray()

    def feed(self,data):
        self.buffer.extend(data)

    def pending(self):
        return len(self.buffer)

    def frames(self):
        while len(self.buffer)>=HEADER_SIZE:
            stream_id,opcode,length=unpack_header(self.buffer[:HEADER_SIZE])
            self.validate(stream_id,opcode,length)
            if len(self.buffer)<HEADER_SIZE+length:
                return
            payload=bytes(self.buffer[HEADER_SIZE:HEADER_SIZE+length])
            del self.buffer[:HEADER_SIZE+length]
            yield stream_id,opcode,payload

    def validate(self,stream_id,opcode,length):
        if opcode not in OPCODES:
            raise ProtocolError(f"Unknown opcode 0x{opcode:02x}",self.buffer)
        if length>self.max_payload:
            raise ProtocolError(f"Payload length {length} exceeds maximum {self.max_payload}",self.buffer)
        if stream_id==0:
            raise ProtocolError("Stream id 0 is reserved",self.buffer)
        if opcode==OP_OPEN and length:
            raise ProtocolError(f"OPEN for stream {stream_id} carries a payload",self.buffer)
        if opcode==OP_DATA and not length:
            raise ProtocolError(f"Empty DATA frame for stream {stream_id}",self.buffer)

    def finish(self):
        if self.buffer:
            raise ProtocolError(f"Truncated frame ({len(self.buffer)} trailing bytes)",self.buffer)
