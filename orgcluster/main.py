from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from orgcluster.api import clusters, users
from orgcluster.api.utils import register_exception_handlers
from orgcluster.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="OrgCluster",
    description="Provisions an isolated managed database cluster for each onboarded organization",
    version="0.1.0",
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


app.include_router(users.router)
app.include_router(clusters.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("orgcluster.main:app", host="0.0.0.0", port=8001, log_level="info", reload=True)
