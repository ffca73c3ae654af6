from forgepilot.context.provider import ContextProvider, FileStoreContextProvider, Snippet

__all__ = ["ContextProvider", "FileStoreContextProvider", "Snippet"]
