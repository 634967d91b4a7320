#!/usr/bin/env python3.11
"""
QR Code Reader Web App
Run: python3.11 qr_web.py
Visit: http://<your-ip>:8080 on your phone (QR_WEB_PORT overrides the port)
"""

import os
import socket

import cv2
import numpy as np
from flask import Flask, jsonify, render_template_string, request

from bit_matrix import BitMatrix
from qr_errors import ReaderError
from qr_reader import QRCodeReader
from qr_result import DecodeOptions

app = Flask(__name__)

# Shared across requests; the reader keeps no per-call state
reader = QRCodeReader()

HTML = '''
<!DOCTYPE html>
<html>
<head>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>QR Reader</title>
    <style>
        body { font-family: -apple-system, sans-serif; max-width: 480px; margin: 24px auto; padding: 0 16px; }
        #result { white-space: pre-wrap; word-break: break-all; background: #f4f4f4; padding: 12px; margin-top: 16px; }
        label { display: block; margin: 8px 0; }
    </style>
</head>
<body>
    <h2>QR Reader</h2>
    <form id="form">
        <input type="file" name="image" accept="image/*" capture="environment">
        <label><input type="checkbox" name="pure_barcode" value="1"> Pure barcode (symbol fills the image)</label>
        <label>Character set <input type="text" name="character_set" placeholder="auto"></label>
        <button type="submit">Decode</button>
    </form>
    <div id="result"></div>
    <script>
        document.getElementById('form').onsubmit = async (e) => {
            e.preventDefault();
            const out = document.getElementById('result');
            out.textContent = 'Decoding...';
            const resp = await fetch('/decode', { method: 'POST', body: new FormData(e.target) });
            const data = await resp.json();
            out.textContent = data.success ? data.text : ('Error: ' + data.error);
        };
    </script>
</body>
</html>
'''


def _flag(value):
    if value is None or value == '':
        return None
    return value.lower() in ('1', 'true', 'yes', 'on')


def options_from_form(form):
    return DecodeOptions(
        try_harder=_flag(form.get('try_harder')),
        pure_barcode=_flag(form.get('pure_barcode')),
        character_set=form.get('character_set') or None,
    )


@app.route('/')
def index():
    return render_template_string(HTML)


@app.route('/decode', methods=['POST'])
def decode():
    if 'image' not in request.files:
        return jsonify({'success': False, 'error': 'No image uploaded'})

    file = request.files['image']
    if file.filename == '':
        return jsonify({'success': False, 'error': 'No file selected'})

    image = cv2.imdecode(np.frombuffer(file.read(), np.uint8), cv2.IMREAD_GRAYSCALE)
    if image is None:
        return jsonify({'success': False, 'error': 'Unreadable image'})
    print(f"[DECODE] {file.filename}: {image.shape[1]}x{image.shape[0]}", flush=True)

    try:
        result = reader.decode(BitMatrix.from_image(image), options_from_form(request.form))
    except ReaderError as e:
        print(f"[DECODE] Error: {e}", flush=True)
        return jsonify({'success': False, 'error': str(e)})

    print(f"[DECODE] {result.text[:60]}", flush=True)
    return jsonify({'success': True, **result.to_dict()})


if __name__ == '__main__':
    # Get local IP
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(('8.8.8.8', 80))
        ip = s.getsockname()[0]
    except OSError:
        ip = '127.0.0.1'
    finally:
        s.close()

    port = int(os.environ.get('QR_WEB_PORT', 8080))
    print("=" * 50)
    print("QR Code Reader Web App")
    print("=" * 50)
    print(f"\nVisit on your phone: http://{ip}:{port}")
    print(f"Or on this computer: http://localhost:{port}")
    print("\nPress Ctrl+C to stop\n")

    app.run(host='0.0.0.0', port=port, debug=False)
