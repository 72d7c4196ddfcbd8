#!/usr/bin/env python3
import asyncio
import logging
from control import ControlChannel,AuthError,ROLE_SERVER
from mux import StreamClosedError
from protocol import REASON_CLOSED
from tunnel import StreamBridge,set_nodelay

logger=logging.getLogger(__name__)

LISTEN_BACKLOG=128

class ExposedListener:
    """Public listener for one exposed port.

    At most one control channel is attached at a time. When it goes away the
    listener keeps accepting for grace_period seconds; connections accepted
    meanwhile wait for the next channel. A channel attaching within the
    window takes over the same socket, otherwise the port is released.
    """
    def __init__(self,host,port,grace_period,backlog=LISTEN_BACKLOG,on_teardown=None):
        self.host=host
        self.port=port
        self.grace_period=grace_period
        self.backlog=backlog
        self.on_teardown=on_teardown
        self.server=None
        self.channel=None
        self.attached=asyncio.Event()
        self.grace_task=None
        self.closed=False

    async def start(self):
        self.server=await asyncio.start_server(self.handle_connection,self.host,self.port,backlog=self.backlog)
        logger.info(f"Exposed port listening on {self.host}:{self.port}")

    def attach(self,channel):
        if self.grace_task:
            self.grace_task.cancel()
            self.grace_task=None
            logger.info(f"Control channel {channel.peer} resumed exposed port {self.port}")
        previous=self.channel
        self.channel=channel
        self.attached.set()
        if previous is not None and previous is not channel:
            logger.warning(f"Control channel {channel.peer} replaces {previous.peer}")
            previous.close()
        channel.mux.add_close_callback(lambda reason:self.detach(channel))

    def detach(self,channel):
        if self.channel is not channel:
            return
        self.channel=None
        self.attached.clear()
        if self.closed:
            return
        logger.info(f"Control channel lost, exposed port {self.port} stays open for {self.grace_period}s")
        self.grace_task=asyncio.create_task(self.grace_timer())

    async def grace_timer(self):
        await asyncio.sleep(self.grace_period)
        self.grace_task=None
        logger.info(f"No control channel within {self.grace_period}s, closing exposed port {self.port}")
        self.close()

    async def wait_channel(self):
        while not self.closed:
            if self.channel is not None:
                return self.channel
            await self.attached.wait()
        return None

    async def handle_connection(self,reader,writer):
        set_nodelay(writer)
        peer=writer.get_extra_info("peername")
        channel=await self.wait_channel()
        try:
            stream=channel.mux.open_stream() if channel else None
        except StreamClosedError:
            stream=None
        if stream is None:
            logger.info(f"No control channel for {peer}, dropping connection")
            writer.close()
            return
        logger.info(f"Connection from {peer} on port {self.port} -> stream {stream.stream_id}")
        await StreamBridge(stream,reader,writer).run()
        logger.debug(f"Connection from {peer} finished")

    def close(self):
        if self.closed:
            return
        self.closed=True
        if self.grace_task and self.grace_task is not asyncio.current_task():
            self.grace_task.cancel()
        self.grace_task=None
        if self.server:
            self.server.close()
        self.attached.set()
        if self.on_teardown:
            self.on_teardown(self)

class BlackholeServer:
    def __init__(self,config):
        self.config=config
        self.control_server=None
        self.listener=None
        self.listener_lock=asyncio.Lock()
        self.channels=set()
        self.shutdown_event=asyncio.Event()
        self.running=False

    @property
    def control_port(self):
        return self.control_server.sockets[0].getsockname()[1]

    async def start(self):
        self.control_server=await asyncio.start_server(self.handle_control,self.config.control_host,self.config.control_port,backlog=LISTEN_BACKLOG)
        self.running=True
        logger.info(f"Control server listening on {self.config.control_host}:{self.control_port}")

    async def get_listener(self):
        async with self.listener_lock:
            if self.listener is None:
                listener=ExposedListener(self.config.exposed_host,self.config.exposed_port,self.config.grace_period,on_teardown=self.listener_closed)
                try:
                    await listener.start()
                except OSError as e:
                    logger.error(f"Cannot listen on exposed port {self.config.exposed_port}: {e}")
                    return None
                self.listener=listener
            return self.listener

    def listener_closed(self,listener):
        if self.listener is listener:
            self.listener=None

    async def handle_control(self,reader,writer):
        set_nodelay(writer)
        channel=ControlChannel(reader,writer,ROLE_SERVER,self.config.secret,auth_timeout=self.config.auth_timeout)
        logger.info(f"Control connection from {channel.peer}")
        try:
            await channel.accept_handshake()
        except AuthError:
            return
        except (ConnectionError,OSError) as e:
            logger.warning(f"Control connection {channel.peer} failed during handshake: {e}")
            channel.close()
            return
        self.channels.add(channel)
        try:
            listener=await self.get_listener()
            if listener is None:
                channel.close()
                return
            listener.attach(channel)
            logger.info(f"Control channel {channel.peer} active")
            reason=await channel.wait_closed()
            logger.info(f"Control channel {channel.peer} closed: {reason}")
        finally:
            self.channels.discard(channel)

    async def run(self):
        try:
            await self.start()
        except OSError as e:
            logger.error(f"Cannot listen on control port {self.config.control_port}: {e}")
            return 1
        await self.shutdown_event.wait()
        self.close()
        logger.info("Server shutting down")
        return 0

    def close(self):
        self.running=False
        if self.control_server:
            self.control_server.close()
        if self.listener:
            self.listener.close()
        for channel in list(self.channels):
            channel.close(REASON_CLOSED)

    def stop(self):
        self.shutdown_event.set()
