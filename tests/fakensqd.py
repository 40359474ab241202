""" A small in-process stand-in for nsqd, speaking enough of the V2 TCP
    protocol to exercise the client: IDENTIFY, SUB, RDY, PUB, FIN, REQ,
    TOUCH, NOP and CLS. Every command is recorded so tests can assert on
    what the client sent.
"""

import collections
import itertools
import socket
import socketserver
import struct
import threading
import time

from eventful import json
from eventful.adapter.nsq import message_frame


def wait_for(predicate, timeout=5.0, interval=0.01):
    """ Poll *predicate* until it returns something true, or fail.
    """

    deadline = time.monotonic() + timeout

    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)

    raise AssertionError('condition not met within %.1f seconds' % (timeout,))


def free_port():
    """ Return a local TCP port with nothing listening on it.
    """

    sock = socket.socket()
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class Message:

    def __init__(self, id, body):
        self.id = id
        self.body = body
        self.attempts = 0
        self.timestamp = time.time_ns()


class Channel:

    def __init__(self, name):
        self.name = name
        self.queue = collections.deque()
        self.clients = list()
        self.next = 0


class Client:

    def __init__(self, sock):
        self.sock = sock
        self.lock = threading.Lock()
        self.rdy = 0
        self.in_flight = dict()
        self.channel = None
        self.topic = None
        self.identify = None
        self.closed = False


    def send(self, kind, data):
        self.write(struct.pack('>l', kind) + data)


    def write(self, frame):
        """ Send a frame that already starts with its type; only the size
            prefix is added here.
        """

        frame = struct.pack('>l', len(frame)) + frame
        with self.lock:
            if self.closed:
                return
            try:
                self.sock.sendall(frame)
            except OSError:
                self.closed = True


class _Handler(socketserver.BaseRequestHandler):

    def handle(self):
        self.server.nsqd._serve(self.request)


class _Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class FakeNsqd:

    def __init__(self):

        self.server = _Server(('127.0.0.1', 0), _Handler)
        self.server.nsqd = self
        self.host, self.port = self.server.server_address

        self.lock = threading.RLock()
        self.topics = dict()
        self.backlog = dict()
        self.clients = list()
        self.ids = itertools.count(1)

        self.published = list()
        self.finished = list()
        self.requeued = list()
        self.touched = list()
        self.commands = list()
        self.nops = 0

        # Error frames to answer the next PUB commands with, in order.
        self.pub_errors = list()

        self.redeliver = True
        self.thread = None


    @property
    def address(self):
        return '%s:%d' % (self.host, self.port)


    def start(self):
        self.thread = threading.Thread(target=self.server.serve_forever, args=(0.05,), daemon=True)
        self.thread.start()


    def stop(self):
        self.server.shutdown()
        self.server.server_close()

        with self.lock:
            clients = list(self.clients)

        for client in clients:
            client.closed = True
            try:
                client.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            client.sock.close()


    def heartbeat(self):
        """ Send a heartbeat to every connected client.
        """

        with self.lock:
            clients = list(self.clients)

        for client in clients:
            client.send(0, b'_heartbeat_')


    def publish(self, topic, body):
        """ Inject a message as if another producer had published it.
        """

        with self.lock:
            self.published.append((topic, body))
            self._enqueue(topic, body)


    def duplicate(self, message_id):
        """ Send an in-flight message again to the client holding it.
        """

        with self.lock:
            for client in self.clients:
                if message_id in client.in_flight:
                    message = client.in_flight[message_id][0]
                    client.write(message_frame(message.id, message.body, message.attempts, message.timestamp))
                    return

        raise KeyError(message_id)


    def ready(self):
        """ Return the RDY count of every subscribed client.
        """

        with self.lock:
            return [client.rdy for client in self.clients if client.channel is not None]


    def verbs(self):
        with self.lock:
            return [command[0] for command in self.commands]


    ## Protocol handling.

    def _serve(self, sock):

        client = Client(sock)
        with self.lock:
            self.clients.append(client)

        reader = sock.makefile('rb')

        try:
            if reader.read(4) != b'  V2':
                client.send(1, b'E_BAD_PROTOCOL bad magic')
                return

            while True:
                line = reader.readline()
                if not line:
                    break

                parts = line.strip().decode().split(' ')
                verb = parts[0]
                params = parts[1:]

                body = None
                if verb in ('IDENTIFY', 'PUB'):
                    size = struct.unpack('>l', reader.read(4))[0]
                    body = reader.read(size)

                with self.lock:
                    self.commands.append((verb, params, body))

                if not self._command(client, verb, params, body):
                    break
        except OSError:
            pass
        finally:
            self._disconnect(client)


    def _command(self, client, verb, params, body):

        if verb == 'IDENTIFY':
            client.identify = json.loads(body)
            answer = {'max_rdy_count': 2500, 'msg_timeout': 60000, 'version': 'fake'}
            client.send(0, json.dumps(answer))

        elif verb == 'SUB':
            topic, channel = params
            with self.lock:
                client.topic = topic
                client.channel = self._channel(topic, channel)
                client.channel.clients.append(client)
            client.send(0, b'OK')

        elif verb == 'RDY':
            with self.lock:
                client.rdy = int(params[0])
                if client.channel is not None:
                    self._pump(client.channel)

        elif verb == 'PUB':
            with self.lock:
                error = self.pub_errors.pop(0) if self.pub_errors else None

            if error is not None:
                client.send(1, error.encode())
            else:
                self.publish(params[0], body)
                client.send(0, b'OK')

        elif verb == 'FIN':
            with self.lock:
                found = client.in_flight.pop(params[0], None)
                if found is None:
                    client.send(1, ('E_FIN_FAILED FIN %s failed' % (params[0],)).encode())
                else:
                    self.finished.append(params[0])
                    self._pump(found[1])

        elif verb == 'REQ':
            message_id, delay = params[0], int(params[1])
            with self.lock:
                found = client.in_flight.pop(message_id, None)
                if found is None:
                    client.send(1, ('E_REQ_FAILED REQ %s failed' % (message_id,)).encode())
                    return True
                self.requeued.append((message_id, delay))

            if self.redeliver:
                timer = threading.Timer(delay / 1000.0, self._requeue, args=found)
                timer.daemon = True
                timer.start()

        elif verb == 'TOUCH':
            with self.lock:
                self.touched.append(params[0])

        elif verb == 'NOP':
            with self.lock:
                self.nops += 1

        elif verb == 'CLS':
            client.send(0, b'CLOSE_WAIT')
            return False

        else:
            client.send(1, ('E_INVALID invalid command %s' % (verb,)).encode())
            return False

        return True


    def _disconnect(self, client):

        with self.lock:
            client.closed = True
            if client in self.clients:
                self.clients.remove(client)

            channel = client.channel
            if channel is not None and client in channel.clients:
                channel.clients.remove(client)

            # Anything the client never finished goes back in line.
            for message, owner in client.in_flight.values():
                owner.queue.appendleft(message)
            client.in_flight.clear()

            if channel is not None:
                self._pump(channel)

        try:
            client.sock.close()
        except OSError:
            pass


    def _channel(self, topic, name):

        channels = self.topics.setdefault(topic, dict())
        first = not channels

        try:
            channel = channels[name]
        except KeyError:
            channel = Channel(name)
            channels[name] = channel

        # Messages published before any channel existed go to the first one.
        if first:
            backlog = self.backlog.pop(topic, ())
            channel.queue.extend(backlog)

        return channel


    def _enqueue(self, topic, body):

        message = Message('%016x' % (next(self.ids),), body)
        channels = self.topics.get(topic)

        if not channels:
            self.backlog.setdefault(topic, list()).append(message)
            return

        for index, channel in enumerate(channels.values()):
            if index == 0:
                copy = message
            else:
                copy = Message('%016x' % (next(self.ids),), body)
            channel.queue.append(copy)
            self._pump(channel)


    def _requeue(self, message, channel):
        with self.lock:
            channel.queue.append(message)
            self._pump(channel)


    def _pump(self, channel):

        while channel.queue:
            ready = [c for c in channel.clients if not c.closed and len(c.in_flight) < c.rdy]
            if not ready:
                return

            client = ready[channel.next % len(ready)]
            channel.next += 1

            message = channel.queue.popleft()
            message.attempts += 1
            client.in_flight[message.id] = (message, channel)
            client.write(message_frame(message.id, message.body, message.attempts, message.timestamp))


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
