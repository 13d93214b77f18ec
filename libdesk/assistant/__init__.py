"""libdesk - assistant package

Everything the admin AI assistant needs on the server side:
- Tool catalog describing the REST operations the assistant may call
- Keyword based tool selection
- OpenRouter chat client
"""
