"""Example user plugin: echoes the request back to the caller."""

config = {
    "name": "echo",
    "author": "gateway",
    "description": "Echoes the query parameters and headers it receives",
    "method": ["get", "post"],
    "category": "tools",
    "link": ["/echo?message=hello"],
}


def initialize(request, response, env):
    """Plain functions run in the threadpool; blocking work is fine here."""
    greeting = env.plugin_config.get("greeting", "echo")
    return {
        "greeting": greeting,
        "method": request.method,
        "query": dict(request.query_params),
        "user_agent": request.headers.get("user-agent"),
    }
