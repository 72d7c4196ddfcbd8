#!/usr/bin/env python3
import pytest
from support import run_all
from protocol import *

def test_frame_layout():
    assert pack_data(7,b"abc")==b"\x00\x00\x00\x07\x02\x00\x00\x00\x03abc"
    assert pack_open(1)==b"\x00\x00\x00\x01\x01\x00\x00\x00\x00"
    assert pack_close(2)==b"\x00\x00\x00\x02\x03\x00\x00\x00\x00"
    assert HEADER_SIZE==9

def test_close_reason_payload():
    frame=pack_close(5,REASON_LOCAL_UNREACHABLE)
    stream_id,opcode,length=unpack_header(frame[:HEADER_SIZE])
    assert (stream_id,opcode)==(5,OP_CLOSE)
    assert unpack_close_reason(frame[HEADER_SIZE:])=="local target unreachable"
    assert unpack_close_reason(b"") is None

def test_decoder_handles_byte_at_a_time_input():
    wire=pack_open(1)+pack_data(1,b"hello")+pack_data(2,b"x"*300)+pack_close(1)
    decoder=FrameDecoder()
    frames=[]
    for i in range(len(wire)):
        decoder.feed(wire[i:i+1])
        frames.extend(decoder.frames())
    assert frames==[(1,OP_OPEN,b""),(1,OP_DATA,b"hello"),(2,OP_DATA,b"x"*300),(1,OP_CLOSE,b"")]
    assert decoder.pending()==0
    decoder.finish()

def test_unknown_opcode_is_fatal():
    decoder=FrameDecoder()
    decoder.feed(pack_header(1,0x7F,0))
    with pytest.raises(ProtocolError,match="opcode"):
        list(decoder.frames())

def test_oversized_length_rejected_from_header_alone():
    decoder=FrameDecoder(max_payload=1024)
    decoder.feed(pack_header(1,OP_DATA,1025))
    with pytest.raises(ProtocolError,match="exceeds"):
        list(decoder.frames())

def test_invalid_headers():
    for header in (pack_header(0,OP_DATA,1),pack_header(3,OP_OPEN,4),pack_header(3,OP_DATA,0)):
        decoder=FrameDecoder()
        decoder.feed(header+b"\x00"*4)
        with pytest.raises(ProtocolError):
            list(decoder.frames())

def test_truncated_frame_at_end_of_input():
    decoder=FrameDecoder()
    decoder.feed(pack_data(1,b"payload")[:-2])
    assert list(decoder.frames())==[]
    with pytest.raises(ProtocolError,match="Truncated"):
        decoder.finish()

def test_auth_failure_line_is_recognised():
    decoder=FrameDecoder()
    decoder.feed(AUTH_FAILED)
    with pytest.raises(ProtocolError) as info:
        list(decoder.frames())
    assert info.value.is_auth_rejection()
    assert ProtocolError("partial",AUTH_FAILED[:HEADER_SIZE]).is_auth_rejection()
    assert not ProtocolError("short",AUTH_FAILED[:4]).is_auth_rejection()
    assert not ProtocolError("truncated",b"A").is_auth_rejection()
    assert not ProtocolError("garbage",pack_header(1,0x7F,0)).is_auth_rejection()
    assert not ProtocolError("empty").is_auth_rejection()

if __name__=="__main__":
    run_all(globals())
