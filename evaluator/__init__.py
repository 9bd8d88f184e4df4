"""
Evaluator - HTTP service that runs untrusted Python in throwaway sandboxes
and relays the captured console output back to the caller.
"""

__version__ = "1.0.0"
