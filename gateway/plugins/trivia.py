"""Trivia questions from the Open Trivia Database."""

import random

config = {
    "name": "trivia",
    "author": "AceGerome",
    "description": "Fetches random trivia questions",
    "method": "get",
    "category": "others",
    "link": ["/trivia?limit=1"],
}

DEFAULT_URL = "https://opentdb.com/api.php"
MAX_LIMIT = 50


def _parse_limit(raw):
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return 1
    return max(1, min(limit, MAX_LIMIT))


def _format_question(item, text):
    options = [text.clean_text(o) for o in item.get("incorrect_answers", [])]
    answer = text.clean_text(item.get("correct_answer", ""))
    options.append(answer)
    random.shuffle(options)

    return {
        "category": text.clean_text(item.get("category", "")),
        "difficulty": item.get("difficulty", ""),
        "question": text.clean_text(item.get("question", "")),
        "options": options,
        "answer": answer,
    }


async def initialize(request, response, env):
    limit = _parse_limit(request.query_params.get("limit"))
    url = env.plugin_config.get("base_url", DEFAULT_URL)

    upstream = await env.http_client.get(url, params={"amount": limit})
    upstream.raise_for_status()

    results = upstream.json().get("results", [])
    trivia = [_format_question(item, env.text) for item in results]

    response.json({"count": len(trivia), "trivia": trivia})
