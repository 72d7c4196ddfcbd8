import asyncio
import logging
import socket
from mux import StreamClosedError
from protocol import REASON_RESET

logger=logging.getLogger(__name__)

CHUNK_SIZE=65536

def set_nodelay(writer):
    sock=writer.get_extra_info("socket")
    if sock:
        sock.setsockopt(socket.IPPROTO_TCP,socket.TCP_NODELAY,1)

class StreamBridge:
    """Copies bytes both ways between a logical stream and a TCP connection.

    End of input on one side is forwarded as a half-close to the other; the
    bridge finishes once both directions are done. Socket errors reset the
    stream, a reset stream closes the socket.
    """
    def __init__(self,stream,reader,writer):
        self.stream=stream
        self.reader=reader
        self.writer=writer
        self.error=None

    async def socket_to_stream(self):
        while True:
            data=await self.reader.read(CHUNK_SIZE)
            if not data:
                break
            await self.stream.write(data)
        self.stream.close()

    async def stream_to_socket(self):
        while True:
            data=await self.stream.read(CHUNK_SIZE)
            if not data:
                break
            self.writer.write(data)
            await self.writer.drain()
        if self.writer.can_write_eof():
            self.writer.write_eof()

    async def run(self):
        upstream=asyncio.create_task(self.socket_to_stream())
        downstream=asyncio.create_task(self.stream_to_socket())
        tasks={upstream,downstream}
        try:
            done,pending=await asyncio.wait(tasks,return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.exception() is not None:
                    self.error=task.exception()
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending,return_exceptions=True)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if isinstance(self.error,StreamClosedError):
                logger.debug(f"Stream {self.stream.stream_id} closed: {self.error.reason}")
            elif self.error is not None:
                logger.debug(f"Stream {self.stream.stream_id} socket error: {self.error}")
                self.stream.abort(REASON_RESET)
            elif not self.stream.closed:
                self.stream.abort(REASON_RESET)
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError:
                pass
        return self.error
