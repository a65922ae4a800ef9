from pathlib import Path
import sys, asyncio

REPO_ROOT = Path(__file__).resolve().parents[1]

def set_loop_policy():
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

def chunked(items: list, size: int) -> list[list]:
    """Split ``items`` into consecutive slices of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]
