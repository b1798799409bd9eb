from .openai_chat import ChatCompletion, OpenAIChatClient, TokenUsage, ToolCall

__all__ = ["ChatCompletion", "OpenAIChatClient", "TokenUsage", "ToolCall"]
