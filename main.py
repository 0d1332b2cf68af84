"""
Main entry point for the ClerkSim API
Run this file to start the server: python main.py
"""
import os
from dotenv import load_dotenv

# Load environment variables before the app reads its configuration
load_dotenv()

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "clerksim.backend.main:app",
        host=os.getenv("API_HOST", "127.0.0.1"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=os.getenv("ENV", "production") == "development",
    )
