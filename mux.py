import asyncio
import logging
from protocol import *

logger=logging.getLogger(__name__)

STREAM_WINDOW=262144
STREAM_BUFFER=1048576
STALL_TIMEOUT=10
SEND_BATCH=262144
READ_CHUNK=65536

STATE_OPEN="open"
STATE_HALF_CLOSED="half-closed"
STATE_CLOSED="closed"

class StreamClosedError(ConnectionError):
    def __init__(self,stream_id,reason):
        super().__init__(f"Stream {stream_id} closed: {reason}")
        self.stream_id=stream_id
        self.reason=reason

class LogicalStream:
    """One multiplexed byte channel.

    local_closed means our CLOSE has been queued, remote_closed means the
    peer's CLOSE has arrived. The stream leaves the multiplexer table once
    both are set. reset_reason is set by abort(), by a CLOSE that carries a
    reason, or by multiplexer shutdown; after that reads raise
    StreamClosedError and inbound DATA is discarded. A stream that already
    sent an empty CLOSE may still send one CLOSE with a reason until the
    peer's CLOSE arrives.
    """
    def __init__(self,mux,stream_id):
        self.mux=mux
        self.stream_id=stream_id
        self.inbox=bytearray()
        self.unsent=0
        self.local_closed=False
        self.remote_closed=False
        self.reset_sent=False
        self.remote_reset=False
        self.reset_reason=None
        self.closed=False
        self.close_reason=None
        self.close_callbacks=[]
        self.readable=asyncio.Event()
        self.writable=asyncio.Event()
        self.writable.set()
        self.progress=asyncio.Event()
        self.closed_event=asyncio.Event()

    def __repr__(self):
        return f"<LogicalStream {self.stream_id} {self.state}>"

    @property
    def state(self):
        if self.closed:
            return STATE_CLOSED
        if self.local_closed or self.remote_closed:
            return STATE_HALF_CLOSED
        return STATE_OPEN

    async def read(self,n=READ_CHUNK):
        while not self.inbox:
            if self.reset_reason is not None:
                raise StreamClosedError(self.stream_id,self.reset_reason)
            if self.remote_closed:
                return b""
            self.readable.clear()
            await self.readable.wait()
        data=bytes(self.inbox[:n])
        del self.inbox[:n]
        self.progress.set()
        return data

    async def write(self,data):
        view=memoryview(data)
        for offset in range(0,len(view),self.mux.max_payload):
            chunk=bytes(view[offset:offset+self.mux.max_payload])
            while self.unsent>=self.mux.stream_window and self.write_error() is None:
                self.writable.clear()
                await self.writable.wait()
            error=self.write_error()
            if error is not None:
                raise StreamClosedError(self.stream_id,error)
            self.unsent+=len(chunk)
            self.mux.send_frame(pack_data(self.stream_id,chunk),self,len(chunk))

    def write_error(self):
        if self.reset_reason is not None:
            return self.reset_reason
        if self.mux.closed:
            return self.mux.close_reason
        if self.local_closed:
            return "write after close"
        return None

    def close(self):
        if self.local_closed or self.closed or self.mux.closed:
            return
        self.local_closed=True
        self.mux.send_frame(pack_close(self.stream_id))
        self.maybe_retire()

    def abort(self,reason=REASON_RESET):
        if self.closed or self.mux.closed:
            return
        if self.reset_reason is None:
            self.reset_reason=reason
        self.inbox.clear()
        self.wake()
        if not self.local_closed or not (self.remote_closed or self.reset_sent):
            self.local_closed=True
            self.reset_sent=True
            self.mux.send_frame(pack_close(self.stream_id,self.reset_reason))
        self.maybe_retire()

    def on_close(self,callback):
        if self.closed:
            callback(self.close_reason)
        else:
            self.close_callbacks.append(callback)

    async def wait_closed(self):
        await self.closed_event.wait()
        return self.close_reason

    def feed(self,payload):
        self.inbox.extend(payload)
        self.readable.set()

    def credit(self,nbytes):
        self.unsent-=nbytes
        if self.unsent<self.mux.stream_window:
            self.writable.set()

    def remote_close(self,reason):
        self.remote_closed=True
        if reason:
            self.remote_reset=True
            logger.debug(f"Stream {self.stream_id} reset by peer: {reason}")
            if self.reset_reason is None:
                self.reset_reason=reason
            self.inbox.clear()
            if not self.local_closed:
                self.local_closed=True
                self.mux.send_frame(pack_close(self.stream_id))
        self.wake()
        self.maybe_retire()

    def maybe_retire(self):
        if self.local_closed and self.remote_closed:
            self.mux.retire(self,self.reset_reason or REASON_CLOSED)

    def terminate(self,reason):
        if self.reset_reason is None and not self.remote_closed:
            self.reset_reason=reason
        self.finish(reason)

    def wake(self):
        self.readable.set()
        self.writable.set()
        self.progress.set()

    def finish(self,reason):
        if self.closed:
            return
        self.closed=True
        self.close_reason=reason
        self.wake()
        self.closed_event.set()
        callbacks,self.close_callbacks=self.close_callbacks,[]
        for callback in callbacks:
            try:
                callback(reason)
            except Exception:
                logger.exception(f"Close callback failed for stream {self.stream_id}")

class Multiplexer:
    """Carries many LogicalStreams over one physical connection.

    The initiator opens streams and the other side accepts them. A single
    sender task owns every write to the socket; a single receiver task turns
    frames into Opened/Data/Closed events and dispatches them.
    """
    def __init__(self,reader,writer,initiator,initial=b"",max_payload=MAX_PAYLOAD,stream_window=STREAM_WINDOW,stream_buffer=STREAM_BUFFER,stall_timeout=STALL_TIMEOUT,name=""):
        self.reader=reader
        self.writer=writer
        self.initiator=initiator
        self.max_payload=max_payload
        self.stream_window=stream_window
        self.stream_buffer=stream_buffer
        self.stall_timeout=stall_timeout
        self.name=name or str(writer.get_extra_info("peername"))
        self.decoder=FrameDecoder(max_payload)
        self.decoder.feed(initial)
        self.streams={}
        self.next_stream_id=1
        self.last_remote_id=0
        self.send_queue=asyncio.Queue()
        self.accept_queue=asyncio.Queue()
        self.closed=False
        self.close_reason=None
        self.fault=None
        self.close_callbacks=[]
        self.closed_event=asyncio.Event()
        self.receiver_task=None
        self.sender_task=None

    def start(self):
        self.receiver_task=asyncio.create_task(self.receive_loop())
        self.sender_task=asyncio.create_task(self.send_loop())
        return self

    def open_stream(self):
        if not self.initiator:
            raise RuntimeError("Only the initiating side may open streams")
        if self.closed:
            raise StreamClosedError(self.next_stream_id,self.close_reason)
        if self.next_stream_id>MAX_STREAM_ID:
            raise RuntimeError("Stream ids exhausted on this connection")
        stream_id=self.next_stream_id
        self.next_stream_id+=1
        stream=LogicalStream(self,stream_id)
        self.streams[stream_id]=stream
        self.send_frame(pack_open(stream_id))
        logger.debug(f"Opened stream {stream_id} on {self.name}")
        return stream

    async def accept(self):
        if self.closed and self.accept_queue.empty():
            return None
        stream=await self.accept_queue.get()
        if stream is None:
            self.accept_queue.put_nowait(None)
        return stream

    def get_stream(self,stream_id):
        return self.streams.get(stream_id)

    async def write(self,stream_id,data):
        stream=self.streams.get(stream_id)
        if stream is None:
            raise StreamClosedError(stream_id,"unknown stream")
        await stream.write(data)

    def close_stream(self,stream_id):
        stream=self.streams.get(stream_id)
        if stream:
            stream.close()

    def add_close_callback(self,callback):
        if self.closed:
            callback(self.close_reason)
        else:
            self.close_callbacks.append(callback)

    def send_frame(self,frame,stream=None,nbytes=0):
        self.send_queue.put_nowait((frame,stream,nbytes))

    def retire(self,stream,reason):
        self.streams.pop(stream.stream_id,None)
        logger.debug(f"Stream {stream.stream_id} on {self.name} closed: {reason}")
        stream.finish(reason)

    async def send_loop(self):
        try:
            while True:
                frame,stream,nbytes=await self.send_queue.get()
                batch=bytearray(frame)
                credits=[(stream,nbytes)] if stream else []
                while len(batch)<SEND_BATCH:
                    try:
                        frame,stream,nbytes=self.send_queue.get_nowait()
                    except asyncio.QueueEmpty:
                        break
                    batch.extend(frame)
                    if stream:
                        credits.append((stream,nbytes))
                self.writer.write(bytes(batch))
                await self.writer.drain()
                for stream,nbytes in credits:
                    stream.credit(nbytes)
        except (ConnectionError,OSError) as e:
            logger.debug(f"Send error on {self.name}: {e}")
            self.terminate(REASON_CONNECTION_LOST)

    async def receive_loop(self):
        reason=REASON_CONNECTION_CLOSED
        try:
            await self.process_frames()
            while True:
                data=await self.reader.read(READ_CHUNK)
                if not data:
                    self.decoder.finish()
                    break
                self.decoder.feed(data)
                await self.process_frames()
        except ProtocolError as e:
            logger.error(f"Protocol error on {self.name}: {e}")
            self.fault=e
            reason=REASON_FAULT
        except (ConnectionError,OSError) as e:
            logger.debug(f"Receive error on {self.name}: {e}")
            reason=REASON_CONNECTION_LOST
        self.terminate(reason)

    async def process_frames(self):
        for stream_id,opcode,payload in self.decoder.frames():
            for event in self.to_events(stream_id,opcode,payload):
                await self.dispatch(event)

    def retired(self,stream_id):
        if self.initiator:
            return stream_id<self.next_stream_id
        return stream_id<=self.last_remote_id

    def to_events(self,stream_id,opcode,payload):
        stream=self.streams.get(stream_id)
        events=[]
        if stream is None:
            if opcode==OP_CLOSE and payload and self.retired(stream_id):
                # reset that crossed our CLOSE on a finished stream
                logger.debug(f"Ignoring late reset for stream {stream_id} on {self.name}")
                return events
            if self.initiator or stream_id<=self.last_remote_id:
                raise ProtocolError(f"Frame for unknown or retired stream {stream_id}")
            if opcode==OP_CLOSE:
                raise ProtocolError(f"CLOSE for unopened stream {stream_id}")
            self.last_remote_id=stream_id
            events.append(Opened(stream_id))
        elif opcode==OP_OPEN:
            raise ProtocolError(f"Stream {stream_id} opened twice")
        elif stream.remote_closed and not (opcode==OP_CLOSE and payload and not stream.remote_reset):
            raise ProtocolError(f"Frame for stream {stream_id} after its CLOSE")
        if opcode==OP_DATA:
            events.append(Data(stream_id,payload))
        elif opcode==OP_CLOSE:
            events.append(Closed(stream_id,unpack_close_reason(payload)))
        return events

    async def dispatch(self,event):
        if isinstance(event,Opened):
            stream=LogicalStream(self,event.stream_id)
            self.streams[event.stream_id]=stream
            logger.debug(f"Peer opened stream {event.stream_id} on {self.name}")
            self.accept_queue.put_nowait(stream)
        elif isinstance(event,Data):
            stream=self.streams[event.stream_id]
            if stream.reset_reason is not None:
                return
            stream.feed(event.payload)
            if len(stream.inbox)>self.stream_buffer:
                await self.wait_progress(stream)
        elif isinstance(event,Closed):
            self.streams[event.stream_id].remote_close(event.reason)

    async def wait_progress(self,stream):
        """Pause the reader until the consumer drains the inbox to half.

        Each read restarts the stall timer; only a consumer that reads
        nothing for stall_timeout seconds gets its stream reset.
        """
        while len(stream.inbox)>self.stream_buffer//2 and stream.reset_reason is None and not stream.closed:
            stream.progress.clear()
            try:
                await asyncio.wait_for(stream.progress.wait(),timeout=self.stall_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Stream {stream.stream_id} on {self.name} made no progress for {self.stall_timeout}s, resetting")
                stream.abort(REASON_STALLED)

    def close(self,reason=REASON_CLOSED):
        self.terminate(reason)

    async def wait_closed(self):
        await self.closed_event.wait()
        return self.close_reason

    def terminate(self,reason):
        if self.closed:
            return
        self.closed=True
        self.close_reason=reason
        streams=list(self.streams.values())
        self.streams.clear()
        for stream in streams:
            stream.terminate(reason)
        while not self.accept_queue.empty():
            self.accept_queue.get_nowait()
        self.accept_queue.put_nowait(None)
        current=asyncio.current_task()
        for task in (self.receiver_task,self.sender_task):
            if task and task is not current and not task.done():
                task.cancel()
        self.writer.close()
        self.closed_event.set()
        callbacks,self.close_callbacks=self.close_callbacks,[]
        for callback in callbacks:
            callback(reason)
        if streams:
            logger.info(f"Connection {self.name} closed ({reason}), {len(streams)} streams terminated")
        else:
            logger.debug(f"Connection {self.name} closed ({reason})")
