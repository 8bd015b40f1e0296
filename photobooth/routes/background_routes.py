"""Background selection listing for the kiosk UI."""

import typing

import fastapi
import fastapi.responses

import photobooth.dependencies
import photobooth.models
import photobooth.services.background_catalog

background_router = fastapi.APIRouter(prefix="/api", tags=["Backgrounds"])


@background_router.get(
    "/backgrounds",
    response_model=dict[str, photobooth.models.BackgroundCategoryModel],
    summary="List the selectable backgrounds grouped by category",
)
async def list_backgrounds(
    background_catalog: typing.Annotated[
        photobooth.services.background_catalog.BackgroundCatalog,
        fastapi.Depends(photobooth.dependencies.get_background_catalog),
    ],
) -> fastapi.responses.JSONResponse:
    # The catalog is fixed for the life of the process.
    return fastapi.responses.JSONResponse(
        content=background_catalog.list_by_category(),
        headers={"Cache-Control": "public, max-age=300"},
    )
