"""
Main application entry point for the FastAPI backend.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.lifespan import lifespan

from .api.routers import processing
from .api.routers import pipeline



# Create the main app instance
app = FastAPI(
    title="Coachtrack API",
    description="API for tracking AI processing sessions and pillar pipeline progress",
    version="1.0.0",
    root_path="/api",
    lifespan=lifespan  # Use the lifespan context manager
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"ok": True}


# Include routers
app.include_router(processing.router)
app.include_router(pipeline.router)

@app.get("/")
async def root():
    """Status endpoint for the API."""
    return {"message": "Welcome to the Coachtrack API. Visit /api/docs for API documentation."}
