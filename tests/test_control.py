#!/usr/bin/env python3
import asyncio
import pytest
from support import run,run_all,socket_pair
from control import *
from protocol import *

class FakeWriter:
    def __init__(self):
        self.written=bytearray()
        self.closed=False

    def get_extra_info(self,name,default=None):
        return default

    def write(self,data):
        self.written.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed=True

def buffered_reader(data):
    reader=asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader

async def server_channel(secret,auth_timeout=2):
    (raw_reader,raw_writer),(reader,writer)=await socket_pair()
    channel=ControlChannel(reader,writer,ROLE_SERVER,secret,auth_timeout=auth_timeout)
    return channel,raw_reader,raw_writer

async def correct_secret():
    channel,raw_reader,raw_writer=await server_channel("S")
    raw_writer.write(b"S\n")
    mux=await channel.accept_handshake()
    assert channel.authenticated and channel.active
    assert mux.initiator
    stream=mux.open_stream()
    assert await asyncio.wait_for(raw_reader.readexactly(HEADER_SIZE),5)==pack_open(1)
    assert stream.stream_id==1
    channel.close()
    assert channel.state==STATE_CLOSED

def test_correct_secret_switches_to_frame_mode():
    run(correct_secret())

async def rejected(payload,auth_timeout=2,eof=False):
    channel,raw_reader,raw_writer=await server_channel("S",auth_timeout)
    raw_writer.write(payload)
    if eof:
        raw_writer.write_eof()
    with pytest.raises(AuthError):
        await channel.accept_handshake()
    assert channel.state==STATE_CLOSED
    assert channel.mux is None
    assert await asyncio.wait_for(raw_reader.read(),5)==AUTH_FAILED
    raw_writer.close()

def test_wrong_secret_is_rejected():
    run(rejected(b"WRONG\n"))

def test_missing_terminator_times_out():
    run(rejected(b"S",auth_timeout=0.2))

def test_eof_before_terminator_is_rejected():
    run(rejected(b"S",eof=True))

def test_overlong_line_is_rejected():
    run(rejected(b"x"*MAX_AUTH_LINE))

async def leftover_bytes():
    channel=ControlChannel(buffered_reader(b"S\r\n"+pack_data(1,b"early")),FakeWriter(),ROLE_SERVER,"S")
    line,initial=await channel.read_auth_line()
    assert line=="S\r"
    assert initial==pack_data(1,b"early")

def test_bytes_after_the_line_are_kept():
    run(leftover_bytes())

async def no_secret():
    channel,raw_reader,raw_writer=await server_channel(None)
    mux=await channel.accept_handshake()
    assert not channel.authenticated and channel.active
    mux.open_stream()
    assert await asyncio.wait_for(raw_reader.readexactly(HEADER_SIZE),5)==pack_open(1)
    channel.close()
    raw_writer.close()

def test_handshake_skipped_without_secret():
    run(no_secret())

async def client_handshake():
    received=asyncio.get_running_loop().create_future()
    async def handle(reader,writer):
        line=await reader.readline()
        writer.write(pack_open(1)+pack_data(1,b"hi"))
        await writer.drain()
        received.set_result((line,writer))
    server=await asyncio.start_server(handle,"127.0.0.1",0)
    port=server.sockets[0].getsockname()[1]
    channel=await ControlChannel.connect("127.0.0.1",port,"S")
    assert channel.active
    assert not channel.mux.initiator
    line,writer=await asyncio.wait_for(received,5)
    assert line==b"S\n"
    stream=await asyncio.wait_for(channel.mux.accept(),5)
    assert await stream.read()==b"hi"
    channel.close()
    writer.close()
    server.close()

def test_client_sends_line_then_speaks_frames():
    run(client_handshake())

async def client_sees_rejection():
    async def handle(reader,writer):
        await reader.readline()
        writer.write(AUTH_FAILED)
        await writer.drain()
        writer.close()
    server=await asyncio.start_server(handle,"127.0.0.1",0)
    port=server.sockets[0].getsockname()[1]
    channel=await ControlChannel.connect("127.0.0.1",port,"WRONG")
    assert await asyncio.wait_for(channel.wait_closed(),5)==REASON_FAULT
    assert channel.auth_rejected()
    assert channel.state==STATE_CLOSED
    server.close()

def test_client_recognises_rejection():
    run(client_sees_rejection())

async def plain_disconnect():
    async def handle(reader,writer):
        await reader.readline()
        writer.close()
    server=await asyncio.start_server(handle,"127.0.0.1",0)
    port=server.sockets[0].getsockname()[1]
    channel=await ControlChannel.connect("127.0.0.1",port,"S")
    assert await asyncio.wait_for(channel.wait_closed(),5)==REASON_CONNECTION_CLOSED
    assert not channel.auth_rejected()
    server.close()

def test_plain_disconnect_is_not_a_rejection():
    run(plain_disconnect())

async def short_garbage():
    async def handle(reader,writer):
        await reader.readline()
        writer.write(b"A")
        await writer.drain()
        writer.close()
    server=await asyncio.start_server(handle,"127.0.0.1",0)
    port=server.sockets[0].getsockname()[1]
    channel=await ControlChannel.connect("127.0.0.1",port,"S")
    assert await asyncio.wait_for(channel.wait_closed(),5)==REASON_FAULT
    assert not channel.auth_rejected()
    server.close()

def test_truncated_garbage_is_not_a_rejection():
    run(short_garbage())

if __name__=="__main__":
    run_all(globals())
