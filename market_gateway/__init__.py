"""Market-data tool gateway and provider-agnostic LLM streaming layer.

Two entrypoints for the rest of the application:
  - MarketDataGateway.execute_tool(): quota-pooled, cached tool RPC calls
  - MarketDataGateway.create_stream() / create_completion(): one streaming
    contract over Anthropic and DeepSeek
"""
