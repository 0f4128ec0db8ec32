"""
Environment configuration for the collaboration server
"""
import os

# HTTP / WebSocket server
PORT = int(os.environ.get("PORT", 5000))
SERVER_HOST = os.environ.get("SERVER_HOST", "0.0.0.0")
LOG_LEVEL = os.environ.get("COLLAB_LOG_LEVEL", "INFO").upper()
RATE_LIMIT_PER_MINUTE = int(os.environ.get("COLLAB_RATE_LIMIT", 100))

# Connection tokens
JWT_SECRET = os.environ.get("COLLAB_JWT_SECRET", "dev-secret")
JWT_TTL = int(os.environ.get("COLLAB_JWT_TTL", 24 * 60 * 60))

# Judge0 execution API
JUDGE0_API_URL = os.environ.get("JUDGE0_API_URL", "https://judge0-ce.p.rapidapi.com")
JUDGE0_PUBLIC_URL = os.environ.get("JUDGE0_PUBLIC_URL", "https://ce.judge0.com")
RAPIDAPI_KEY = os.environ.get("RAPIDAPI_KEY", "")
JUDGE0_TIMEOUT = float(os.environ.get("JUDGE0_TIMEOUT", 30))
