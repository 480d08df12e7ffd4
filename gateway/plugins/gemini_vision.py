"""Gemini vision: prompt plus optional image, answered by Google's Gemini API."""

import base64
import os

config = {
    "name": "Gemini vision",
    "author": "Ry",
    "description": "Gemini vision AI image + prompt processing",
    "method": "get",
    "category": "ai",
    "link": ["/gemini-vision"],
}

API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_MODEL = "gemini-2.5-pro"


async def _fetch_image(client, url):
    resp = await client.get(url)
    resp.raise_for_status()
    return base64.b64encode(resp.content).decode("ascii")


def _extract_text(data):
    try:
        return data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return "No response generated."


async def initialize(request, response, env):
    params = request.query_params
    prompt = params.get("prompt")
    if not prompt:
        response.status(400).json({"error": "Missing prompt. Use ?prompt=&imgUrl="})
        return

    # Credentials come from configs/plugins.yaml or the environment, never from code
    api_key = env.plugin_config.get("api_key") or os.environ.get("GEMINI_API_KEY")
    if not api_key:
        response.status(503).json({"error": "Gemini API key is not configured"})
        return

    image_data = params.get("img")
    if not image_data and params.get("imgUrl"):
        image_data = await _fetch_image(env.http_client, params["imgUrl"])

    parts = [{"text": prompt}]
    if image_data:
        parts.append({"inline_data": {"mime_type": params.get("mime", "image/jpeg"), "data": image_data}})

    model = env.plugin_config.get("model", DEFAULT_MODEL)
    upstream = await env.http_client.post(
        API_URL.format(model=model),
        params={"key": api_key},
        json={"contents": [{"role": "user", "parts": parts}]},
    )
    upstream.raise_for_status()

    response.json({"response": _extract_text(upstream.json())})
