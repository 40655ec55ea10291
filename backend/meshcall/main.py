from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import logging
import os
from dotenv import load_dotenv

# Load environment variables before importing local modules
load_dotenv()

from .api.routers import recordings, signaling

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

# Configure the package logger with line numbers and function names
logger = logging.getLogger("meshcall")
logger.setLevel(LOG_LEVEL)

# Create console handler with formatting
console_handler = logging.StreamHandler()
console_handler.setLevel(LOG_LEVEL)

formatter = logging.Formatter(
    "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d - %(funcName)s()] - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
console_handler.setFormatter(formatter)

# Add handler to logger if not already added
if not logger.handlers:
    logger.addHandler(console_handler)

app = FastAPI(
    title="Meshcall Signaling API",
    description="Room signaling relay and recording intake for mesh calls",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight requests for 1 hour
)

app.include_router(signaling.router)
app.include_router(recordings.router)


@app.get("/health")
async def health():
    rooms = signaling.get_registry().rooms()
    return {"status": "ok", "rooms": len(rooms)}


if __name__ == "__main__":
    uvicorn.run("meshcall.main:app", host="0.0.0.0", port=5167, reload=True)
