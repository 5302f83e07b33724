import logging

import uvicorn

from push_starlette import PushSettings, create_app

log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"
logging.basicConfig(format=log_fmt, level=logging.INFO, datefmt=datefmt)

app = create_app(PushSettings.from_config())

if __name__ == "__main__":
    print("Push server")
    print("  Polling:    curl 'http://localhost:8000/api/data?version=0&timeout=20000'")
    print("  SSE:        curl -N http://localhost:8000/events")
    print("  WebSocket:  ws://localhost:8000/ws")
    print("  Webhooks:   curl http://localhost:8000/webhook/history")
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="info")
