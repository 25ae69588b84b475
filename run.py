from quizduel import create_app, socketio

app = create_app()
 
if __name__ == '__main__':
    # Socket.IO server carries both the HTTP routes and the /ws realtime namespace
    socketio.run(app, debug=True, allow_unsafe_werkzeug=True)
