#!/usr/bin/env python3
import asyncio
import logging
from control import ControlChannel
from protocol import REASON_LOCAL_UNREACHABLE
from tunnel import StreamBridge,set_nodelay

logger=logging.getLogger(__name__)

MAX_ATTEMPTS=5
RETRY_DELAY=10
CONNECT_TIMEOUT=10

STATE_IDLE="idle"
STATE_DIALING="dialing"
STATE_ACTIVE="active"
STATE_BACKOFF="backoff"
STATE_EXHAUSTED="exhausted"

class RetryState:
    """Attempt bookkeeping for the reconnection loop.

    Values are never mutated: failed() and reset() return new states.
    """
    def __init__(self,max_attempts=MAX_ATTEMPTS,delay=RETRY_DELAY,attempts=0):
        self.max_attempts=max_attempts
        self.delay=delay
        self.attempts=attempts

    def __repr__(self):
        return f"<RetryState {self.attempts}/{self.max_attempts} delay={self.delay}>"

    def __eq__(self,other):
        if not isinstance(other,RetryState):
            return NotImplemented
        return (self.max_attempts,self.delay,self.attempts)==(other.max_attempts,other.delay,other.attempts)

    @property
    def exhausted(self):
        return self.attempts>=self.max_attempts

    @property
    def remaining(self):
        return max(0,self.max_attempts-self.attempts)

    def failed(self):
        return RetryState(self.max_attempts,self.delay,self.attempts+1)

    def reset(self):
        return RetryState(self.max_attempts,self.delay,0)

class LocalConnector:
    def __init__(self,host,port,connect_timeout=CONNECT_TIMEOUT):
        self.host=host
        self.port=port
        self.connect_timeout=connect_timeout
        self.tasks=set()

    async def serve(self,mux):
        while True:
            stream=await mux.accept()
            if stream is None:
                break
            task=asyncio.create_task(self.handle_stream(stream))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)

    async def handle_stream(self,stream):
        try:
            reader,writer=await asyncio.wait_for(asyncio.open_connection(self.host,self.port),timeout=self.connect_timeout)
        except (OSError,asyncio.TimeoutError) as e:
            logger.warning(f"Stream {stream.stream_id}: cannot reach {self.host}:{self.port}: {e or 'timeout'}")
            stream.abort(REASON_LOCAL_UNREACHABLE)
            return
        set_nodelay(writer)
        logger.info(f"Stream {stream.stream_id} connected to {self.host}:{self.port}")
        await StreamBridge(stream,reader,writer).run()
        logger.debug(f"Stream {stream.stream_id} finished")

    def close(self):
        for task in list(self.tasks):
            if not task.done():
                task.cancel()
        self.tasks.clear()

class BlackholeClient:
    def __init__(self,config):
        self.config=config
        self.connector=LocalConnector(config.target_host,config.target_port,config.connect_timeout)
        self.retry=RetryState(config.max_attempts,config.retry_delay)
        self.state=STATE_IDLE
        self.channel=None
        self.dials=0
        self.shutdown_event=asyncio.Event()
        self.running=False

    async def dial(self):
        self.state=STATE_DIALING
        self.dials+=1
        logger.info(f"Connecting to {self.config.server}:{self.config.control_port} (attempt {self.retry.attempts+1}/{self.retry.max_attempts})")
        try:
            channel=await ControlChannel.connect(self.config.server,self.config.control_port,self.config.secret,timeout=self.config.connect_timeout)
        except (OSError,asyncio.TimeoutError) as e:
            logger.warning(f"Cannot connect to control server: {e or 'timeout'}")
            return None
        logger.info(f"Connected to control server {self.config.server}:{self.config.control_port}, tunneling to {self.config.target}")
        return channel

    async def session(self,channel):
        self.state=STATE_ACTIVE
        self.channel=channel
        serve_task=asyncio.create_task(self.connector.serve(channel.mux))
        closed_task=asyncio.create_task(channel.wait_closed())
        shutdown_task=asyncio.create_task(self.shutdown_event.wait())
        try:
            done,pending=await asyncio.wait({closed_task,shutdown_task},return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
        finally:
            channel.close()
            await serve_task
            self.channel=None
        if shutdown_task in done:
            return True
        if channel.auth_rejected():
            logger.error("Control server rejected the shared secret")
        else:
            logger.warning(f"Control connection closed: {channel.mux.close_reason}")
        return False

    async def run(self):
        self.running=True
        retry=self.retry
        try:
            while not self.shutdown_event.is_set():
                channel=await self.dial()
                if channel is not None:
                    if self.shutdown_event.is_set():
                        channel.close()
                        break
                    if await self.session(channel):
                        break
                    if self.config.reset_on_success and not channel.auth_rejected():
                        retry=retry.reset()
                retry=retry.failed()
                self.retry=retry
                if retry.exhausted:
                    self.state=STATE_EXHAUSTED
                    logger.error(f"Giving up after {retry.attempts} failed attempts")
                    return 1
                self.state=STATE_BACKOFF
                logger.info(f"Reconnecting in {retry.delay} seconds ({retry.remaining} attempts left)...")
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(),timeout=retry.delay)
                    break
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running=False
            self.connector.close()
        self.state=STATE_IDLE
        logger.info("Client shutting down")
        return 0

    def stop(self):
        self.shutdown_event.set()
