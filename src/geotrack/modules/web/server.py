from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from ...event_bus import STREAM_QUEUE_SIZE, EventBus
from ...exceptions import TrackingBusy, TrackingError
from ...session.controller import SessionController
from ..location.models import TOPIC_ERROR, TOPIC_FIX, TOPIC_STATE, LocationFix, StateChange

logger = logging.getLogger(__name__)


def _encode(topic: str, event: Any) -> Dict[str, Any]:
    if isinstance(event, (LocationFix, StateChange)):
        data: Any = event.to_dict()
    elif isinstance(event, TrackingError):
        data = {"error": type(event).__name__, "message": str(event)}
    else:
        data = event
    return {"topic": topic, "data": data}


INDEX_HTML = """
<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <title>geotrack</title>
    <style>
      body{font-family:system-ui,Arial;margin:20px}
      pre{background:#f5f5f5;padding:10px;max-height:60vh;overflow:auto}
      #remedy{display:none;color:#a00}
    </style>
  </head>
  <body>
    <h2>Location tracking</h2>
    <button id="toggle">...</button>
    <span id="state"></span>
    <p id="remedy"><span id="remedy-msg"></span> <button id="settings">Settings</button></p>
    <pre id="log"></pre>
    <script>
      const log = document.getElementById('log');
      function render(s){
        document.getElementById('toggle').textContent = s.button;
        document.getElementById('state').textContent = s.state;
        const r = document.getElementById('remedy');
        if(s.remediation){
          document.getElementById('remedy-msg').textContent = s.remediation.message;
          r.style.display = 'block';
        } else {
          r.style.display = 'none';
        }
      }
      async function refresh(){
        const r = await fetch('/api/tracking');
        const s = await r.json();
        render(s);
        log.textContent = s.log.slice().reverse().join('\\n');
      }
      document.getElementById('toggle').onclick = async () => {
        const r = await fetch('/api/tracking/toggle', {method: 'POST'});
        render(await r.json());
      };
      document.getElementById('settings').onclick = () => fetch('/api/settings', {method: 'POST'});
      const es = new EventSource('/api/sse');
      es.onmessage = (ev) => {
        try{
          const msg = JSON.parse(ev.data);
          if(msg.topic === 'location.fix'){
            const d = new Date(msg.data.ts);
            log.textContent = 'Foreground location: (' + d.toISOString().substr(11, 12) + ' - '
              + msg.data.latitude + ', ' + msg.data.longitude + ')\\n' + log.textContent;
          }
          if(msg.topic === 'tracking.state'){
            refresh();
          }
        }catch(e){console.error(e)}
      };
      refresh();
    </script>
  </body>
</html>
"""


class WebServer:
    def __init__(
        self,
        events: EventBus,
        controller: SessionController,
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> None:
        self._events = events
        self._controller = controller
        self._host = host
        self._port = port
        self._task: asyncio.Task | None = None
        self._runner: Optional[web.AppRunner] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="web-server")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([
            web.get('/', self._handle_index),
            web.get('/api/sse', self._handle_sse),
            web.get('/api/tracking', self._handle_status),
            web.post('/api/tracking/toggle', self._handle_toggle),
            web.post('/api/tracking/stop', self._handle_stop),
            web.post('/api/settings', self._handle_settings),
        ])
        return app

    async def _run(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Web server listening on http://%s:%d", self._host, self._port)

        try:
            while True:
                await asyncio.sleep(60)
        finally:
            await self._runner.cleanup()
            self._runner = None

    async def _handle_index(self, request: web.Request) -> web.Response:
        return web.Response(text=INDEX_HTML, content_type='text/html')

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._controller.snapshot())

    async def _handle_toggle(self, request: web.Request) -> web.Response:
        try:
            await self._controller.toggle()
        except TrackingBusy as exc:
            return web.json_response({"error": "busy", "message": str(exc)}, status=409)
        return web.json_response(self._controller.snapshot())

    async def _handle_stop(self, request: web.Request) -> web.Response:
        # Stop action offered next to the persistent indicator
        await self._controller.stop()
        return web.json_response(self._controller.snapshot())

    async def _handle_settings(self, request: web.Request) -> web.Response:
        await self._controller.open_settings()
        return web.json_response({"ok": True})

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        resp = web.StreamResponse(status=200, reason='OK', headers={'Content-Type': 'text/event-stream', 'Cache-Control': 'no-cache'})
        await resp.prepare(request)

        queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=STREAM_QUEUE_SIZE)

        async def forward(topic: str) -> None:
            async for ev in self._events.stream(topic):
                await queue.put(_encode(topic, ev))

        await self._controller.attach()
        tasks = [asyncio.create_task(forward(topic)) for topic in (TOPIC_FIX, TOPIC_STATE, TOPIC_ERROR)]
        try:
            while True:
                item = await queue.get()
                await resp.write(f"data: {json.dumps(item)}\n\n".encode())
        except (asyncio.CancelledError, ConnectionResetError):
            pass
        finally:
            for t in tasks:
                t.cancel()
            await self._controller.detach()
        return resp
