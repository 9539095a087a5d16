"""FastAPI application entry point."""

from fastapi import FastAPI

from .. import __version__
from .routes import identity, migrations

app = FastAPI(
    title="Saga Migration API",
    description="API for exporting saga state from Azure Table Storage and importing it into Cosmos DB",
    version=__version__,
)

# Include routers
app.include_router(migrations.router, prefix="/api/migrations", tags=["migrations"])
app.include_router(identity.router, prefix="/api/identity", tags=["identity"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
