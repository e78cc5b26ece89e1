# Tool-facing surface of the context connector.
# Import ContextToolService from context_connector.mcp_server.tools.
