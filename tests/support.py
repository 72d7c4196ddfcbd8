import asyncio
import os
import socket
import sys
import time
import traceback

sys.path.insert(0,os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mux import Multiplexer

ROOT=os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

def free_port():
    with socket.socket(socket.AF_INET,socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1",0))
        return sock.getsockname()[1]

def run(coro,timeout=30):
    return asyncio.run(asyncio.wait_for(coro,timeout))

async def wait_until(predicate,timeout=5):
    deadline=time.monotonic()+timeout
    while not predicate():
        if time.monotonic()>deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)

async def socket_pair():
    """Two connected (reader,writer) pairs over loopback TCP"""
    accepted=asyncio.get_running_loop().create_future()
    async def handle(reader,writer):
        accepted.set_result((reader,writer))
    server=await asyncio.start_server(handle,"127.0.0.1",0)
    port=server.sockets[0].getsockname()[1]
    local=await asyncio.open_connection("127.0.0.1",port)
    remote=await asyncio.wait_for(accepted,5)
    server.close()
    return local,remote

async def mux_pair(**options):
    (local_reader,local_writer),(remote_reader,remote_writer)=await socket_pair()
    opener=Multiplexer(remote_reader,remote_writer,initiator=True,name="opener",**options).start()
    acceptor=Multiplexer(local_reader,local_writer,initiator=False,name="acceptor",**options).start()
    return opener,acceptor

async def read_all(stream):
    data=bytearray()
    while True:
        chunk=await stream.read()
        if not chunk:
            return bytes(data)
        data.extend(chunk)

async def start_echo_server(port=0):
    async def handle(reader,writer):
        try:
            while True:
                data=await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()
    server=await asyncio.start_server(handle,"127.0.0.1",port)
    return server,server.sockets[0].getsockname()[1]

def run_all(namespace):
    tests=[(name,func) for name,func in namespace.items() if name.startswith("test_") and callable(func)]
    passed=0
    for name,func in tests:
        try:
            func()
            passed+=1
            print(f"  {name}: OK")
        except Exception:
            print(f"  {name}: FAILED")
            traceback.print_exc()
    print(f"\nResult: {passed}/{len(tests)} passed")
    sys.exit(0 if passed==len(tests) else 1)
