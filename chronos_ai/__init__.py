"""
Chronos AI gateway: the credential-holding Gemini proxy and the client service that calls it.
"""

__version__ = "1.0.0"
