"""
Entry point for the Marathon Photo Booth service.

Creates the FastAPI application and, when executed directly, serves it
with Uvicorn on the configured host and port.
"""

import uvicorn

import configuration
import photobooth.server_factory

fastapi_application = photobooth.server_factory.create_application()

if __name__ == "__main__":
    application_configuration = configuration.ApplicationConfiguration()

    uvicorn.run(
        "main:fastapi_application",
        host=application_configuration.application_host,
        port=application_configuration.application_port,
        log_config=None,
    )
