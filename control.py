import asyncio
import logging
from auth import validate_token
from mux import Multiplexer
from protocol import *
from tunnel import set_nodelay

logger=logging.getLogger(__name__)

ROLE_SERVER="server"
ROLE_CLIENT="client"

STATE_CONNECTING="connecting"
STATE_AUTHENTICATING="authenticating"
STATE_ACTIVE="active"
STATE_CLOSED="closed"

AUTH_TIMEOUT=10
CONNECT_TIMEOUT=10

class AuthError(Exception):
    pass

class ControlChannel:
    """One physical control connection and the multiplexer running over it.

    The server side reads an optional "<secret>\\n" line before switching to
    frame mode; whatever followed the line on the wire becomes the first
    input of the multiplexer. The client side writes the line and switches
    to frame mode immediately.
    """
    def __init__(self,reader,writer,role,secret=None,auth_timeout=AUTH_TIMEOUT,mux_options=None):
        self.reader=reader
        self.writer=writer
        self.role=role
        self.secret=secret or None
        self.auth_timeout=auth_timeout
        self.mux_options=mux_options or {}
        self.mux=None
        self.authenticated=False
        self._state=STATE_CONNECTING
        peer=writer.get_extra_info("peername")
        self.peer=f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @classmethod
    async def connect(cls,host,port,secret=None,timeout=CONNECT_TIMEOUT,mux_options=None):
        reader,writer=await asyncio.wait_for(asyncio.open_connection(host,port),timeout=timeout)
        set_nodelay(writer)
        channel=cls(reader,writer,ROLE_CLIENT,secret,mux_options=mux_options)
        channel.open_handshake()
        return channel

    @property
    def state(self):
        if self.mux is not None and self.mux.closed:
            return STATE_CLOSED
        return self._state

    @property
    def active(self):
        return self.state==STATE_ACTIVE

    def open_handshake(self):
        if self.secret:
            self.writer.write(pack_auth_line(self.secret))
        self.activate(b"")

    async def accept_handshake(self):
        initial=b""
        if self.secret:
            self._state=STATE_AUTHENTICATING
            try:
                line,initial=await asyncio.wait_for(self.read_auth_line(),timeout=self.auth_timeout)
            except asyncio.TimeoutError:
                await self.reject(f"no line terminator within {self.auth_timeout}s")
            if line is None:
                await self.reject("missing line terminator")
            if not validate_token(line.strip(),self.secret):
                await self.reject("wrong secret")
            self.authenticated=True
            logger.info(f"Control connection {self.peer} authenticated")
        return self.activate(initial)

    async def read_auth_line(self):
        buffer=bytearray()
        while True:
            index=buffer.find(b"\n")
            if index!=-1:
                return buffer[:index].decode(errors="replace"),bytes(buffer[index+1:])
            if len(buffer)>=MAX_AUTH_LINE:
                return None,b""
            data=await self.reader.read(MAX_AUTH_LINE)
            if not data:
                return None,b""
            buffer.extend(data)

    async def reject(self,reason):
        logger.warning(f"Authentication failed for {self.peer}: {reason}")
        self._state=STATE_CLOSED
        try:
            self.writer.write(AUTH_FAILED)
            await self.writer.drain()
        except OSError as e:
            logger.debug(f"Could not notify {self.peer} of failed authentication: {e}")
        self.writer.close()
        raise AuthError(reason)

    def activate(self,initial):
        self.mux=Multiplexer(self.reader,self.writer,initiator=self.role==ROLE_SERVER,initial=initial,name=self.peer,**self.mux_options).start()
        self._state=STATE_ACTIVE
        return self.mux

    def auth_rejected(self):
        return self.mux is not None and self.mux.fault is not None and self.mux.fault.is_auth_rejection()

    def close(self,reason=REASON_CLOSED):
        if self.mux is not None:
            self.mux.close(reason)
        elif self._state!=STATE_CLOSED:
            self._state=STATE_CLOSED
            self.writer.close()

    async def wait_closed(self):
        if self.mux is None:
            return REASON_CLOSED
        return await self.mux.wait_closed()
