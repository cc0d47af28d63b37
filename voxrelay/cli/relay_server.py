# coding=utf-8
# Copyright 2026 The Alibaba Qwen team.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Browser microphone relay over WebSocket (cloud recognition + translation).
"""
import argparse
import asyncio
import fcntl
import json
import logging
import os
import socket
from contextlib import suppress
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from voxrelay.audio.pcm import FRAME_SAMPLES, SAMPLE_RATE
from voxrelay.errors import ConfigurationError, RelayError
from voxrelay.services.registry import ServiceRegistry, normalize_service
from voxrelay.streaming.deepgram import DeepgramRecognitionBackend
from voxrelay.streaming.recognition import RecognitionBackend
from voxrelay.streaming.recreation_policy import RECREATION_MODES, RecreationPolicy
from voxrelay.streaming.retry import RetryPolicy
from voxrelay.streaming.session import SessionSettings, StreamSession
from voxrelay.streaming.session_policy import SessionPolicy
from voxrelay.synthesis.tts import SpeechSynthesisBridge
from voxrelay.translation.dispatcher import TranslationDispatcher
from voxrelay.translation.providers import (
    AnthropicMessagesProvider,
    GoogleTranslateProvider,
    LocalModelProvider,
    OpenAIChatProvider,
    TranslationProvider,
)

logger = logging.getLogger(__name__)
_INSTANCE_LOCK_HANDLE: Optional[Any] = None

KEY_ENV_VARS = {
    "deepgram": "DEEPGRAM_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def _instance_lock_path(port: int) -> Path:
    safe_port = int(port)
    return Path("/tmp") / f"voxrelay_server_{safe_port}.lock"


def _acquire_instance_lock_or_raise(port: int, lock_path: Optional[Path] = None):
    target = Path(lock_path) if lock_path is not None else _instance_lock_path(port)
    target.parent.mkdir(parents=True, exist_ok=True)
    handle = target.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        holder = ""
        with suppress(Exception):
            handle.seek(0)
            holder = handle.read().strip()
        with suppress(Exception):
            handle.close()
        holder_suffix = f" (holder pid: {holder})" if holder else ""
        raise RuntimeError(f"another relay server is already running for port {int(port)}{holder_suffix}") from exc
    handle.seek(0)
    handle.truncate(0)
    handle.write(str(os.getpid()))
    handle.flush()
    return handle


def _release_instance_lock(handle) -> None:
    if handle is None:
        return
    with suppress(Exception):
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    with suppress(Exception):
        handle.close()


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    if bind_host == "*":
        bind_host = "0.0.0.0"
    bind_port = int(port)
    try:
        addr_infos = socket.getaddrinfo(
            bind_host,
            bind_port,
            family=socket.AF_UNSPEC,
            type=socket.SOCK_STREAM,
            proto=socket.IPPROTO_TCP,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        probe = socket.socket(family, socktype, proto)
        with suppress(OSError):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            probe.close()

    if last_error is None:
        raise RuntimeError(f"bind {bind_host}:{bind_port} is not available")
    raise RuntimeError(f"bind {bind_host}:{bind_port} is not available: {last_error}") from last_error


INDEX_HTML_TEMPLATE = r"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>Live transcription &amp; translation</title>
  <style>
    :root{ --bg:#14161a; --ink:#f1f2f3; --line:#3b4048; --ok:#29b26b; --warn:#cc8f28; --err:#d75858; }
    * { box-sizing: border-box; }
    body{ margin:0; font-family:"Avenir Next","Segoe UI",sans-serif; color:var(--ink); background:var(--bg); }
    .card{ max-width:960px; margin:0 auto; padding:16px; display:grid; gap:12px; }
    .row{ display:flex; gap:10px; align-items:center; flex-wrap:wrap; }
    button, select, input{ border:1px solid var(--line); border-radius:8px; background:#2a2f36; color:var(--ink); padding:8px 12px; }
    button{ font-weight:700; cursor:pointer; }
    #status{ font-size:13px; }
    #status.ok{ color:var(--ok); } #status.warn{ color:var(--warn); } #status.err{ color:var(--err); }
    .pane{ border:1px solid var(--line); border-radius:10px; padding:12px; min-height:160px; overflow-y:auto; max-height:38vh; }
    .interim{ opacity:.6; font-style:italic; }
    .line{ margin:0 0 6px; }
    .tr{ color:#9fc6ff; }
  </style>
</head>
<body>
<div class="card">
  <div class="row">
    <label>From <select id="src"></select></label>
    <label>To <select id="dst"></select></label>
    <button id="swap" type="button">&#8646;</button>
    <label>Translator <select id="provider"></select></label>
    <label><input id="tts" type="checkbox" /> Speak</label>
  </div>
  <div class="row">
    <select id="keyService"><option>deepgram</option><option>openai</option><option>anthropic</option><option>google</option></select>
    <input id="keyValue" type="password" placeholder="API key" />
    <button id="keySave" type="button">Verify &amp; save</button>
  </div>
  <div class="row">
    <button id="start" type="button">Start</button>
    <button id="stop" type="button" disabled>Stop</button>
    <span id="status">Connecting</span>
    <span id="remaining"></span>
  </div>
  <div class="pane" id="transcript"></div>
  <div class="pane" id="translation"></div>
</div>
<script>
(() => {
  const TARGET_SR = __SAMPLE_RATE__;
  const FRAME_SAMPLES = __FRAME_SAMPLES__;
  const MAX_RECONNECTS = 5;
  const RECONNECT_DELAY_MS = 1000;
  const LANGS = __LANGUAGES__;
  const $ = (id) => document.getElementById(id);
  let ws = null, reconnects = 0, recording = false;
  let audioCtx = null, mediaStream = null, source = null, workletNode = null, sinkGain = null;
  let pending = new Float32Array(0);
  const finals = [];
  const translations = new Map();
  let interim = "";

  for (const code of LANGS) {
    $("src").add(new Option(code, code));
    $("dst").add(new Option(code, code));
  }
  $("src").value = "__SOURCE_LANGUAGE__";
  $("dst").value = "__TARGET_LANGUAGE__";

  function setStatus(text, kind){ const el = $("status"); el.textContent = text; el.className = kind || ""; }
  function send(type, payload){
    if (ws && ws.readyState === WebSocket.OPEN) ws.send(JSON.stringify(Object.assign({type}, payload || {})));
  }

  function render(){
    const t = $("transcript");
    t.innerHTML = "";
    for (const s of finals) { const p = document.createElement("p"); p.className = "line"; p.textContent = s; t.appendChild(p); }
    if (interim) { const p = document.createElement("p"); p.className = "line interim"; p.textContent = interim; t.appendChild(p); }
    const tr = $("translation");
    tr.innerHTML = "";
    for (const s of finals) {
      const v = translations.get(s);
      if (!v) continue;
      const p = document.createElement("p"); p.className = "line tr"; p.textContent = v; tr.appendChild(p);
    }
  }

  function concatFloat32(a, b){
    const out = new Float32Array(a.length + b.length);
    out.set(a, 0);
    out.set(b, a.length);
    return out;
  }

  function resampleLinear(input, srcSr, dstSr){
    if (srcSr === dstSr) return input;
    const ratio = dstSr / srcSr;
    const outLen = Math.max(0, Math.round(input.length * ratio));
    const out = new Float32Array(outLen);
    for (let i = 0; i < outLen; i++) {
      const x = i / ratio;
      const x0 = Math.floor(x);
      const x1 = Math.min(x0 + 1, input.length - 1);
      const t = x - x0;
      out[i] = input[x0] * (1 - t) + input[x1] * t;
    }
    return out;
  }

  function float32ToPcm16(samples){
    const out = new Int16Array(samples.length);
    for (let i = 0; i < samples.length; i++) {
      const s = Math.max(-1, Math.min(1, samples[i]));
      out[i] = s < 0 ? Math.round(s * 32768) : Math.round(s * 32767);
    }
    return out.buffer;
  }

  function onCapturedSamples(samples, srcSr){
    if (!recording) return;
    pending = concatFloat32(pending, resampleLinear(samples, srcSr, TARGET_SR));
    while (pending.length >= FRAME_SAMPLES) {
      const frame = pending.slice(0, FRAME_SAMPLES);
      pending = pending.slice(FRAME_SAMPLES);
      if (ws && ws.readyState === WebSocket.OPEN) ws.send(float32ToPcm16(frame));
    }
  }

  async function buildCaptureGraph(){
    mediaStream = await navigator.mediaDevices.getUserMedia({ audio: { channelCount: 1, echoCancellation: true } });
    audioCtx = new (window.AudioContext || window.webkitAudioContext)();
    if (audioCtx.state === "suspended") await audioCtx.resume();
    source = audioCtx.createMediaStreamSource(mediaStream);
    const moduleCode = `
      class MicCaptureProcessor extends AudioWorkletProcessor {
        process(inputs) {
          const input = inputs[0];
          if (input && input[0] && input[0].length > 0) this.port.postMessage(input[0].slice(0));
          return true;
        }
      }
      registerProcessor("mic-capture-processor", MicCaptureProcessor);
    `;
    const url = URL.createObjectURL(new Blob([moduleCode], { type: "application/javascript" }));
    await audioCtx.audioWorklet.addModule(url);
    workletNode = new AudioWorkletNode(audioCtx, "mic-capture-processor", { numberOfInputs: 1, numberOfOutputs: 1, outputChannelCount: [1] });
    workletNode.port.onmessage = (evt) => onCapturedSamples(new Float32Array(evt.data || []), audioCtx.sampleRate);
    sinkGain = audioCtx.createGain();
    sinkGain.gain.value = 0.0;
    source.connect(workletNode);
    workletNode.connect(sinkGain);
    sinkGain.connect(audioCtx.destination);
  }

  async function teardownCapture(){
    if (mediaStream) mediaStream.getTracks().forEach((t) => t.stop());
    if (audioCtx) await audioCtx.close();
    mediaStream = null; audioCtx = null; source = null; workletNode = null; sinkGain = null;
    pending = new Float32Array(0);
  }

  function stoppedLocally(reason){
    if (!recording) return;
    recording = false;
    if (interim) { finals.push(interim); interim = ""; }
    teardownCapture();
    $("start").disabled = false; $("stop").disabled = true;
    setStatus(`Stopped (${reason})`, "warn");
    render();
  }

  function handleServerMessage(evt){
    let msg = {};
    try { msg = JSON.parse(evt.data); } catch (err) { console.error("invalid json", err); return; }
    switch (msg.type) {
      case "ready":
        if (msg.providers) {
          $("provider").innerHTML = "";
          for (const p of msg.providers) $("provider").add(new Option(p, p));
          $("provider").value = msg.translation_provider || msg.providers[0];
        }
        setStatus("Connected", "ok");
        break;
      case "started":
        recording = true;
        $("start").disabled = true; $("stop").disabled = false;
        setStatus("Listening", "ok");
        break;
      case "transcription":
        if (msg.is_final) { finals.push(msg.text); interim = ""; } else { interim = msg.text; }
        render();
        break;
      case "translation":
        translations.set(msg.original, msg.translated);
        render();
        break;
      case "tts_audio":
        new Audio(`data:${msg.mime_type};base64,${msg.audio}`).play().catch(() => {});
        break;
      case "time_remaining":
        $("remaining").textContent = `${msg.minutes} min left`;
        break;
      case "recording_stopped":
        stoppedLocally(msg.reason || "stopped");
        break;
      case "translation_direction":
        $("src").value = msg.source_language; $("dst").value = msg.target_language;
        break;
      case "error":
        setStatus(msg.message || "error", "err");
        break;
    }
  }

  function connect(){
    const scheme = location.protocol === "https:" ? "wss" : "ws";
    const sock = new WebSocket(`${scheme}://${location.host}/ws`);
    sock.binaryType = "arraybuffer";
    sock.onopen = () => { reconnects = 0; };
    sock.onmessage = handleServerMessage;
    sock.onclose = () => {
      if (ws !== sock) return;
      ws = null;
      stoppedLocally("connection lost");
      if (reconnects >= MAX_RECONNECTS) { setStatus("Disconnected", "err"); return; }
      reconnects += 1;
      setStatus(`Reconnecting (${reconnects}/${MAX_RECONNECTS})`, "warn");
      setTimeout(connect, RECONNECT_DELAY_MS);
    };
    ws = sock;
  }

  $("start").onclick = async () => {
    try {
      await buildCaptureGraph();
    } catch (err) {
      setStatus(`Microphone unavailable: ${err && err.message ? err.message : err}`, "err");
      return;
    }
    send("start_stream", {
      source_language: $("src").value,
      target_language: $("dst").value,
      translation_provider: $("provider").value,
    });
  };
  $("stop").onclick = () => send("end_stream");
  $("swap").onclick = () => send("set_translation_direction", { swap: true });
  $("src").onchange = $("dst").onchange = () => send("set_translation_direction", { source_language: $("src").value, target_language: $("dst").value });
  $("provider").onchange = () => send("update_config", { translation_provider: $("provider").value });
  $("tts").onchange = () => send("update_config", { tts_enabled: $("tts").checked });
  $("keySave").onclick = async () => {
    const resp = await fetch("/verify-credential", {
      method: "POST",
      headers: { "Content-Type": "application/json" },
      body: JSON.stringify({ service: $("keyService").value, key: $("keyValue").value }),
    });
    const body = await resp.json();
    setStatus(body.success ? `${$("keyService").value} key saved` : (body.error || "verification failed"), body.success ? "ok" : "err");
    if (body.success) $("keyValue").value = "";
  };

  connect();
})();
</script>
</body>
</html>
"""

INDEX_LANGUAGES = ["en-US", "ja-JP", "zh-CN", "zh-TW", "ko-KR", "es-ES", "fr-FR", "de-DE", "it-IT", "pt-BR"]


class VerifyCredentialRequest(BaseModel):
    service: str
    key: str


def _parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


def _optional_text(payload: Dict[str, Any], name: str) -> Optional[str]:
    if name not in payload:
        return None
    text = str(payload.get(name) or "").strip()
    return text or None


def _settings_changes(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Session setting fields present in a client message."""
    changes: Dict[str, Any] = {}
    for name in ("source_language", "target_language", "translation_provider"):
        value = _optional_text(payload, name)
        if value is not None:
            changes[name] = value
    if "alternative_languages" in payload:
        raw = payload.get("alternative_languages") or []
        if not isinstance(raw, list):
            raise ValueError("alternative_languages must be a list")
        changes["alternative_languages"] = tuple(str(x).strip() for x in raw if str(x or "").strip())
    if "tts_enabled" in payload:
        changes["tts_enabled"] = bool(payload.get("tts_enabled"))
    prompts = payload.get("prompts")
    if prompts is not None:
        if not isinstance(prompts, dict):
            raise ValueError("prompts must be an object")
        template = str(prompts.get("translation") or "").strip()
        changes["instruction_template"] = template or None
    return changes


def _build_registry(args: argparse.Namespace) -> ServiceRegistry:
    keys = {}
    for service in KEY_ENV_VARS:
        value = str(getattr(args, f"{service}_api_key", "") or "").strip()
        if value:
            keys[service] = value
    return ServiceRegistry(keys)


def _build_recognizer(args: argparse.Namespace) -> RecognitionBackend:
    return DeepgramRecognitionBackend(
        model=str(getattr(args, "deepgram_model", "nova-3")),
        sample_rate=SAMPLE_RATE,
        endpointing_ms=int(getattr(args, "endpointing_ms", 300)),
    )


def _build_dispatcher(args: argparse.Namespace, registry: ServiceRegistry) -> TranslationDispatcher:
    timeout_sec = float(getattr(args, "translation_timeout_sec", 30.0))
    providers: List[TranslationProvider] = [
        GoogleTranslateProvider(timeout_sec=timeout_sec),
        OpenAIChatProvider(
            base_url=str(getattr(args, "openai_base_url", "https://api.openai.com/v1")),
            model=str(getattr(args, "openai_model", "gpt-4o-mini")),
            max_new_tokens=int(getattr(args, "translation_max_new_tokens", 256)),
            timeout_sec=timeout_sec,
        ),
        AnthropicMessagesProvider(
            model=str(getattr(args, "anthropic_model", "claude-3-5-haiku-latest")),
            max_new_tokens=int(getattr(args, "translation_max_new_tokens", 256)),
            timeout_sec=timeout_sec,
        ),
    ]
    local_model_path = str(getattr(args, "local_translation_model_path", "") or "").strip()
    if local_model_path:
        providers.append(
            LocalModelProvider(
                model_path=local_model_path,
                max_new_tokens=int(getattr(args, "translation_max_new_tokens", 256)),
                device=str(getattr(args, "translation_device", "auto")),
            )
        )
    return TranslationDispatcher(
        providers,
        registry,
        context_max_chars=int(getattr(args, "translation_context_chars", 1000)),
        retry_policy=RetryPolicy(
            max_attempts=int(getattr(args, "rate_limit_attempts", 2)),
            base_delay_sec=float(getattr(args, "rate_limit_delay_sec", 1.0)),
        ),
        instruction_template=getattr(args, "instruction_template", None) or None,
    )


def _create_app(
    args: argparse.Namespace,
    registry: Optional[ServiceRegistry] = None,
    recognizer: Optional[RecognitionBackend] = None,
    dispatcher: Optional[TranslationDispatcher] = None,
    synthesizer: Optional[SpeechSynthesisBridge] = None,
) -> FastAPI:
    app = FastAPI(title="VoxRelay Streaming Relay")
    registry = registry if registry is not None else _build_registry(args)
    recognizer = recognizer if recognizer is not None else _build_recognizer(args)
    dispatcher = dispatcher if dispatcher is not None else _build_dispatcher(args, registry)
    if synthesizer is None and bool(getattr(args, "enable_tts", True)):
        synthesizer = SpeechSynthesisBridge(
            registry,
            speaking_rate=float(getattr(args, "tts_speaking_rate", 1.0)),
            retry_policy=RetryPolicy(
                max_attempts=int(getattr(args, "rate_limit_attempts", 2)),
                base_delay_sec=float(getattr(args, "rate_limit_delay_sec", 1.0)),
            ),
        )
    runtime = SimpleNamespace(active_connections=0, sessions=set())

    default_settings = SessionSettings(
        source_language=str(getattr(args, "source_language", "en-US")),
        target_language=str(getattr(args, "target_language", "ja-JP")),
        translation_provider=str(getattr(args, "translation_provider", "openai")),
        tts_enabled=bool(getattr(args, "tts_default", False)),
    )
    max_frame_bytes = max(2, int(getattr(args, "max_frame_bytes", FRAME_SAMPLES * 2 * 4)))

    def _new_session(emit, peer: str) -> StreamSession:
        return StreamSession(
            emit=emit,
            backend=recognizer,
            registry=registry,
            dispatcher=dispatcher,
            synthesizer=synthesizer,
            settings=default_settings,
            recreation_policy=RecreationPolicy(
                mode=str(getattr(args, "recreation_mode", "time_cap")),
                max_stream_sec=float(getattr(args, "stream_max_sec", 240.0)),
                soft_cap_sec=float(getattr(args, "stream_soft_cap_sec", 200.0)),
                final_delay_sec=float(getattr(args, "recreate_final_delay_sec", 1.0)),
            ),
            session_policy=SessionPolicy(
                max_duration_sec=float(getattr(args, "session_max_sec", 7200.0)),
                warning_threshold_sec=float(getattr(args, "session_warning_sec", 300.0)),
                warning_interval_sec=float(getattr(args, "session_warning_interval_sec", 60.0)),
            ),
            context_max_chars=int(getattr(args, "context_max_chars", 2000)),
            max_consecutive_recoveries=int(getattr(args, "max_recoveries", 3)),
            drain_timeout_sec=float(getattr(args, "drain_timeout_sec", 2.0)),
            surface_synthesis_errors=bool(getattr(args, "surface_synthesis_errors", False)),
            peer=peer,
        )

    @app.get("/")
    async def index() -> HTMLResponse:
        html = INDEX_HTML_TEMPLATE.replace("__SAMPLE_RATE__", str(SAMPLE_RATE))
        html = html.replace("__FRAME_SAMPLES__", str(FRAME_SAMPLES))
        html = html.replace("__LANGUAGES__", json.dumps(INDEX_LANGUAGES))
        html = html.replace("__SOURCE_LANGUAGE__", default_settings.source_language)
        html = html.replace("__TARGET_LANGUAGE__", default_settings.target_language)
        return HTMLResponse(html)

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {
            "status": "ok",
            "active_connections": int(runtime.active_connections),
            "active_sessions": sum(1 for s in runtime.sessions if s.active_stream is not None),
            "services": registry.snapshot().configured(),
            "translation_providers": dispatcher.available(),
        }

    @app.post("/verify-credential")
    async def verify_credential(req: VerifyCredentialRequest) -> Dict[str, Any]:
        key = str(req.key or "").strip()
        try:
            service = normalize_service(req.service)
            if not key:
                raise ConfigurationError("API key is empty")
            if service == recognizer.credential_service:
                await recognizer.verify(key)
            else:
                providers = [dispatcher.resolve(name) for name in dispatcher.available()]
                provider = next((p for p in providers if p.credential_service == service), None)
                if provider is None:
                    raise ConfigurationError(f"no verifier for service: {service}")
                await asyncio.to_thread(provider.verify, key)
        except RelayError as e:
            logger.info("credential verification failed service=%s err=%s", req.service, e)
            return {"success": False, "error": str(e)}
        registry.update({service: key})
        return {"success": True}

    @app.websocket("/ws")
    async def ws_stream(websocket: WebSocket) -> None:
        if runtime.active_connections >= int(getattr(args, "max_connections", 8)):
            await websocket.accept()
            await websocket.send_json({"type": "error", "message": "too many active connections"})
            await websocket.close(code=1013)
            return

        await websocket.accept()
        runtime.active_connections += 1
        peer = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
        send_lock = asyncio.Lock()
        conn = SimpleNamespace(closed=False)
        stats = SimpleNamespace(
            raw_frames=0,
            raw_bytes=0,
            text_msgs=0,
            start_msgs=0,
            end_msgs=0,
            last_error="",
        )

        async def _send_json(payload: Dict[str, Any]) -> None:
            if conn.closed:
                return
            async with send_lock:
                await websocket.send_json(payload)

        async def _send_error(message: str) -> None:
            stats.last_error = message
            await _send_json({"type": "error", "message": message})

        session = _new_session(_send_json, peer)
        runtime.sessions.add(session)
        logger.info("ws open peer=%s session=%s active=%d", peer, session.session_id, runtime.active_connections)

        try:
            await _send_json(
                {
                    "type": "ready",
                    "session_id": session.session_id,
                    "source_language": session.settings.source_language,
                    "target_language": session.settings.target_language,
                    "translation_provider": session.settings.translation_provider,
                    "providers": dispatcher.available(),
                    "services": registry.snapshot().configured(),
                    "tts_available": synthesizer is not None,
                }
            )
            while True:
                try:
                    msg = await asyncio.wait_for(
                        websocket.receive(),
                        timeout=float(getattr(args, "idle_timeout_sec", 120.0)),
                    )
                except asyncio.TimeoutError:
                    await _send_error("idle timeout")
                    break

                if msg.get("type") == "websocket.disconnect":
                    break

                raw = msg.get("bytes")
                text = msg.get("text")

                if raw is not None:
                    if len(raw) > max_frame_bytes:
                        await _send_error("audio frame too large")
                        continue
                    if len(raw) % 2 != 0:
                        await _send_error("pcm16le bytes length must be even")
                        continue
                    stats.raw_frames += 1
                    stats.raw_bytes += len(raw)
                    if stats.raw_frames == 1 or stats.raw_frames % 200 == 0:
                        logger.info(
                            "ws recv peer=%s frames=%d bytes=%d dropped=%d",
                            peer,
                            stats.raw_frames,
                            stats.raw_bytes,
                            session.stats.frames_dropped,
                        )
                    await session.feed_audio(raw)
                    continue

                if text is None:
                    continue
                stats.text_msgs += 1
                try:
                    payload = _parse_json_message(text)
                except ValueError as e:
                    await _send_error(str(e))
                    continue

                msg_type = str(payload.get("type", "")).lower()
                if msg_type == "start_stream":
                    stats.start_msgs += 1
                    try:
                        changes = _settings_changes(payload)
                        dispatcher.resolve(changes.get("translation_provider", session.settings.translation_provider))
                        await session.start(settings=replace(session.settings, **changes))
                    except (RelayError, ValueError) as e:
                        await _send_error(f"start failed: {e}")
                    continue

                if msg_type == "end_stream":
                    stats.end_msgs += 1
                    await session.stop()
                    continue

                if msg_type == "set_translation_direction":
                    try:
                        if payload.get("swap"):
                            await session.swap_direction()
                        else:
                            changes = _settings_changes(payload)
                            changes = {k: v for k, v in changes.items() if k in ("source_language", "target_language")}
                            if not changes:
                                raise ValueError("source_language or target_language is required")
                            await session.apply_settings(**changes)
                    except (RelayError, ValueError) as e:
                        await _send_error(f"direction change failed: {e}")
                        continue
                    await _send_json(
                        {
                            "type": "translation_direction",
                            "source_language": session.settings.source_language,
                            "target_language": session.settings.target_language,
                        }
                    )
                    continue

                if msg_type == "update_config":
                    try:
                        api_keys = payload.get("api_keys")
                        if api_keys is not None and not isinstance(api_keys, dict):
                            raise ValueError("api_keys must be an object")
                        changes = _settings_changes(payload)
                        if "translation_provider" in changes:
                            dispatcher.resolve(changes["translation_provider"])
                        if api_keys is not None:
                            registry.update(api_keys)
                        restarted = await session.apply_settings(**changes)
                    except (RelayError, ValueError) as e:
                        await _send_error(f"config update failed: {e}")
                        continue
                    await _send_json(
                        {
                            "type": "config_updated",
                            "services": registry.snapshot().configured(),
                            "source_language": session.settings.source_language,
                            "target_language": session.settings.target_language,
                            "translation_provider": session.settings.translation_provider,
                            "tts_enabled": session.settings.tts_enabled,
                            "restarted": bool(restarted),
                        }
                    )
                    continue

                if msg_type == "ping":
                    await _send_json({"type": "pong"})
                    continue

                await _send_error("unknown message type")

        except WebSocketDisconnect:
            pass
        except Exception as e:
            stats.last_error = str(e)
            logger.exception("ws handler failed peer=%s", peer)
            with suppress(Exception):
                await _send_json({"type": "error", "message": str(e)})
        finally:
            conn.closed = True
            await session.release()
            runtime.sessions.discard(session)
            runtime.active_connections = max(0, runtime.active_connections - 1)
            with suppress(Exception):
                await websocket.close(code=1000)
            logger.info(
                "ws close peer=%s session=%s active=%d raw_frames=%d raw_bytes=%d text_msgs=%d start=%d end=%d forwarded=%d dropped=%d finals=%d recreations=%d last_error=%s",
                peer,
                session.session_id,
                runtime.active_connections,
                stats.raw_frames,
                stats.raw_bytes,
                stats.text_msgs,
                stats.start_msgs,
                stats.end_msgs,
                session.stats.frames_forwarded,
                session.stats.frames_dropped,
                session.stats.finals,
                session.stats.recreations,
                stats.last_error or session.stats.last_error,
            )

    return app


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="VoxRelay streaming relay (HTTPS + WebSocket)")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=int, default=8024, help="Bind port")

    for service, env_name in KEY_ENV_VARS.items():
        p.add_argument(
            f"--{service}-api-key",
            default=os.environ.get(env_name, ""),
            help=f"{service} API key (default: ${env_name})",
        )

    p.add_argument("--deepgram-model", default="nova-3", help="Deepgram live model")
    p.add_argument("--endpointing-ms", type=int, default=300, help="Upstream silence endpointing (0 disables)")
    p.add_argument("--source-language", default="en-US", help="Default recognition language")
    p.add_argument("--target-language", default="ja-JP", help="Default translation target language")
    p.add_argument(
        "--translation-provider",
        default="openai",
        choices=["google", "openai", "anthropic", "local"],
        help="Default translation provider",
    )
    p.add_argument("--openai-base-url", default="https://api.openai.com/v1", help="OpenAI-compatible API base URL")
    p.add_argument("--openai-model", default="gpt-4o-mini", help="OpenAI-compatible chat model")
    p.add_argument("--anthropic-model", default="claude-3-5-haiku-latest", help="Anthropic model")
    p.add_argument(
        "--local-translation-model-path",
        default="",
        help="Local/HF causal LM used by the 'local' provider (needs the 'local' extra)",
    )
    p.add_argument(
        "--translation-device",
        default="auto",
        choices=["cpu", "cuda", "auto"],
        help="Device for the local translation model",
    )
    p.add_argument("--translation-max-new-tokens", type=int, default=256, help="Translation max generation tokens")
    p.add_argument("--translation-timeout-sec", type=float, default=30.0, help="Translation HTTP timeout")
    p.add_argument(
        "--translation-context-chars",
        type=int,
        default=1000,
        help="Maximum characters of previous sentences sent as translation context",
    )
    p.add_argument("--instruction-template", default=None, help="Override the LLM translation instruction template")
    p.add_argument("--rate-limit-attempts", type=int, default=2, help="Translation attempts when rate limited")
    p.add_argument("--rate-limit-delay-sec", type=float, default=1.0, help="Delay before the first rate-limit retry")
    p.add_argument("--context-max-chars", type=int, default=2000, help="Per-session context buffer size")

    p.add_argument(
        "--recreation-mode",
        default="time_cap",
        choices=list(RECREATION_MODES),
        help="When to recreate the upstream recognition stream",
    )
    p.add_argument("--stream-max-sec", type=float, default=240.0, help="Hard cap on one upstream stream's age")
    p.add_argument(
        "--stream-soft-cap-sec",
        type=float,
        default=200.0,
        help="After this age a final result triggers an early hand-off",
    )
    p.add_argument("--recreate-final-delay-sec", type=float, default=1.0, help="Delay for after_final_delayed mode")
    p.add_argument("--max-recoveries", type=int, default=3, help="Consecutive automatic stream recoveries")
    p.add_argument("--drain-timeout-sec", type=float, default=2.0, help="Wait for a retiring stream's last results")
    p.add_argument("--session-max-sec", type=float, default=7200.0, help="Maximum recording duration per session")
    p.add_argument("--session-warning-sec", type=float, default=300.0, help="Start warning this long before the cap")
    p.add_argument("--session-warning-interval-sec", type=float, default=60.0, help="Warning cadence")

    p.add_argument(
        "--enable-tts",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Offer speech synthesis of translations",
    )
    p.add_argument("--tts-default", default=False, action=argparse.BooleanOptionalAction, help="Speak translations by default")
    p.add_argument("--tts-speaking-rate", type=float, default=1.0, help="Synthesis speaking rate")
    p.add_argument(
        "--surface-synthesis-errors",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Send synthesis failures to the client as error events",
    )

    p.add_argument("--max-connections", type=int, default=8, help="Concurrent websocket connections")
    p.add_argument("--idle-timeout-sec", type=float, default=120.0, help="Close connections silent for this long")
    p.add_argument("--max-frame-bytes", type=int, default=FRAME_SAMPLES * 2 * 4, help="Largest accepted audio frame")
    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args(argv)


def main() -> None:
    global _INSTANCE_LOCK_HANDLE
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        _INSTANCE_LOCK_HANDLE = _acquire_instance_lock_or_raise(args.port)
        _assert_port_bindable(args.host, args.port)
    except RuntimeError as exc:
        _release_instance_lock(_INSTANCE_LOCK_HANDLE)
        _INSTANCE_LOCK_HANDLE = None
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc

    try:
        registry = _build_registry(args)
        app = _create_app(args, registry=registry)
        configured = [name for name, ok in registry.snapshot().configured().items() if ok]
        logger.info("relay starting host=%s port=%d services=%s", args.host, args.port, ",".join(configured) or "none")
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    finally:
        _release_instance_lock(_INSTANCE_LOCK_HANDLE)
        _INSTANCE_LOCK_HANDLE = None


if __name__ == "__main__":
    main()
