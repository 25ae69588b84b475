NAMESPACE = '/ws'


def duel_room(duel_id):
    return f"duel:{duel_id}"


class SocketIOEmitter:
    """Send server events to a room or to a single client sid."""

    def __init__(self, socketio, namespace=NAMESPACE):
        self.socketio = socketio
        self.namespace = namespace

    def emit(self, event, payload, to, skip_sid=None):
        self.socketio.emit(event, payload, to=to, skip_sid=skip_sid, namespace=self.namespace)

    def enter_room(self, sid, room):
        self.socketio.server.enter_room(sid, room, namespace=self.namespace)

    def leave_room(self, sid, room):
        self.socketio.server.leave_room(sid, room, namespace=self.namespace)
