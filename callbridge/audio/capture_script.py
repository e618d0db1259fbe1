"""
Browser-side capture graph injected into the telephony page.

The script opens the relay websocket, builds a Web Audio graph at 16 kHz fed by
the selected input device (the virtual cable that carries the call audio) or, if
no device matches, by the page's own media elements, converts each processing
block to little-endian Int16 and sends it as a binary frame. It registers
``window.__callbridgeCapture.stop()`` so the host can tear the graph down.
"""

CAPTURE_SCRIPT = r"""
async ({ relayUrl, sampleRate, deviceLabel }) => {
  if (window.__callbridgeCapture) {
    window.__callbridgeCapture.stop();
  }

  const socket = new WebSocket(relayUrl);
  socket.binaryType = 'arraybuffer';
  const control = (payload) => {
    if (socket.readyState === WebSocket.OPEN) {
      socket.send(JSON.stringify(payload));
    }
  };

  const audioContext = new (window.AudioContext || window.webkitAudioContext)({ sampleRate });
  const sources = [];
  let stream = null;

  try {
    const devices = await navigator.mediaDevices.enumerateDevices();
    const wanted = deviceLabel ? deviceLabel.toLowerCase() : null;
    const device = devices.find(
      (d) => d.kind === 'audioinput' && wanted && d.label.toLowerCase().includes(wanted)
    );
    if (device) {
      stream = await navigator.mediaDevices.getUserMedia({
        audio: {
          deviceId: { exact: device.deviceId },
          echoCancellation: false,
          noiseSuppression: false,
          autoGainControl: false,
        },
      });
      sources.push(audioContext.createMediaStreamSource(stream));
    }
  } catch (err) {
    console.log('[Browser] capture device selection failed: ' + err);
  }

  if (sources.length === 0) {
    document.querySelectorAll('audio, video').forEach((el) => {
      try {
        const mediaStream = el.srcObject || (el.captureStream ? el.captureStream() : null);
        if (mediaStream) {
          sources.push(audioContext.createMediaStreamSource(mediaStream));
        }
      } catch (err) {
        console.log('[Browser] could not tap media element: ' + err);
      }
    });
  }

  const processor = audioContext.createScriptProcessor(2048, 1, 1);
  const sink = audioContext.createGain();
  sink.gain.value = 0;
  sources.forEach((source) => source.connect(processor));
  processor.connect(sink);
  sink.connect(audioContext.destination);

  processor.onaudioprocess = (event) => {
    if (socket.readyState !== WebSocket.OPEN) {
      return;
    }
    const input = event.inputBuffer.getChannelData(0);
    const pcm = new Int16Array(input.length);
    for (let i = 0; i < input.length; i++) {
      const s = Math.max(-1, Math.min(1, input[i]));
      pcm[i] = s < 0 ? s * 0x8000 : s * 0x7fff;
    }
    socket.send(pcm.buffer);
  };

  socket.onopen = () => {
    control({
      type: 'device_selected',
      label: stream ? stream.getAudioTracks()[0].label : 'media-elements',
    });
    control({ type: 'capture_started', sampleRate: audioContext.sampleRate, sources: sources.length });
  };

  const playing = new Set();
  let playhead = 0;

  socket.onmessage = async (event) => {
    if (typeof event.data === 'string') {
      let message = null;
      try {
        message = JSON.parse(event.data);
      } catch (err) {
        return;
      }
      if (message && message.type === 'flush_playback') {
        playing.forEach((node) => { try { node.stop(); } catch (e) {} });
        playing.clear();
        playhead = 0;
      }
      return;
    }
    if (!(event.data instanceof ArrayBuffer)) {
      return;
    }
    const samples = new Int16Array(event.data);
    const buffer = audioContext.createBuffer(1, samples.length, sampleRate);
    const channel = buffer.getChannelData(0);
    for (let i = 0; i < samples.length; i++) {
      channel[i] = samples[i] / 0x8000;
    }
    const node = audioContext.createBufferSource();
    node.buffer = buffer;
    node.connect(audioContext.destination);
    const startAt = Math.max(audioContext.currentTime, playhead);
    playhead = startAt + buffer.duration;
    playing.add(node);
    node.onended = () => playing.delete(node);
    node.start(startAt);
  };

  socket.onerror = () => console.log('[Browser] capture relay socket error');

  window.__callbridgeCapture = {
    stop: () => {
      try { processor.disconnect(); } catch (e) {}
      sources.forEach((source) => { try { source.disconnect(); } catch (e) {} });
      if (stream) { stream.getTracks().forEach((track) => track.stop()); }
      try { audioContext.close(); } catch (e) {}
      try { socket.close(); } catch (e) {}
      delete window.__callbridgeCapture;
    },
  };
  return sources.length;
}
"""

TEARDOWN_SCRIPT = r"""
() => {
  if (window.__callbridgeCapture) {
    window.__callbridgeCapture.stop();
    return true;
  }
  return false;
}
"""
