#!/usr/bin/env python3
"""
Main entry point for the Discord bot when run as a module.
Usage: python -m app
"""

def main():
    from .bot import install_signal_handlers, loop, run_bot

    install_signal_handlers()
    try:
        loop.run_until_complete(run_bot())
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

if __name__ == "__main__":
    main()
