"""
Read-only catalog of the photo booth's background scenes.

Each background is a reference image on disk plus the scene metadata the
prompt composer needs (lighting, colour treatment, time period, pose).
The catalog resolves a kiosk's selection to its definition, reads the
reference image bytes off the event loop, and groups the backgrounds by
category for the kiosk's selection screen.

Background files are never written at runtime, so concurrent reads need
no coordination.
"""

import asyncio
import dataclasses
import pathlib
import typing

import structlog

import photobooth.exceptions

logger = structlog.get_logger()

_MEDIA_TYPES_BY_SUFFIX: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


@dataclasses.dataclass(frozen=True)
class BackgroundCategory:
    identifier: str
    display_name: str


CATEGORIES: tuple[BackgroundCategory, ...] = (
    BackgroundCategory("amsterdam750", "Amsterdam 750"),
    BackgroundCategory("futureofrunning", "Future of Running"),
    BackgroundCategory("tcs50", "TCS50"),
    BackgroundCategory("classic", "Classic"),
)


@dataclasses.dataclass(frozen=True)
class BackgroundDefinition:
    """
    One selectable background scene.

    ``time_period`` is one of ``past``, ``present`` or ``future`` and
    drives period clothing in the prompt; ``pose`` is ``running`` or
    ``walking``.
    """

    identifier: str
    name: str
    file_name: str
    category: str
    description: str
    lighting: str
    color_treatment: str
    composition: str
    time_period: str = "present"
    era: str = "2025"
    pose: str = "running"

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES_BY_SUFFIX.get(pathlib.PurePath(self.file_name).suffix.lower(), "image/png")


DEFAULT_BACKGROUNDS: tuple[BackgroundDefinition, ...] = (
    BackgroundDefinition(
        identifier="amsterdam750-flowermarket",
        name="Historic Flower Market",
        file_name="Amsterdam750-FlowerMarket.png",
        category="amsterdam750",
        description="Historic Amsterdam canal with traditional Dutch houses, flower market scene",
        lighting="overcast Northern European light, soft shadows",
        color_treatment="Hand painted color with rich historical tones",
        composition="canal on left, street path on right side",
        time_period="past",
        era="early 1900s",
    ),
    BackgroundDefinition(
        identifier="amsterdam750-goldenage",
        name="Golden Age Harbor",
        file_name="Amsterdam750-GoldenAge1.png",
        category="amsterdam750",
        description="Sepia-toned Amsterdam harbor from the Golden Age",
        lighting="soft, diffused historical lighting",
        color_treatment="sepia vintage filter with muted browns and yellows",
        composition="harbor on left, cobblestone street on right",
        time_period="past",
        era="1600s-1700s",
    ),
    BackgroundDefinition(
        identifier="amsterdam750-rijksmuseum",
        name="Rijksmuseum Celebration",
        file_name="Amsterdam750-Rijksmuseum3.png",
        category="amsterdam750",
        description="Modern crowds at the Rijksmuseum",
        lighting="bright daylight, natural shadows",
        color_treatment="full color modern photography",
        composition="museum entrance centered, crowds on sides",
    ),
    BackgroundDefinition(
        identifier="future-solarbridge",
        name="Solar Bridge Run",
        file_name="FutureofRunning-SolarBridge2.png",
        category="futureofrunning",
        description="Futuristic bridge with solar panels and drone spectators",
        lighting="bright futuristic lighting with LED accents",
        color_treatment="full color with blue-cyan tech tones",
        composition="bridge pathway centered",
        time_period="future",
        era="2050s",
    ),
    BackgroundDefinition(
        identifier="future-biodomes",
        name="Canal Biodomes",
        file_name="FutureofRunningBiodomes2.png",
        category="futureofrunning",
        description="Future Amsterdam with biodome structures along canals",
        lighting="soft bioluminescent and natural light mix",
        color_treatment="full color with green-blue environmental tones",
        composition="canal path on right, biodomes on left",
        time_period="future",
        era="2050s",
    ),
    BackgroundDefinition(
        identifier="future-smartfinish",
        name="Smart Stadium Finish",
        file_name="FututeofRunning-SmartFinish5.png",
        category="futureofrunning",
        description="High-tech stadium with robotic assistants and holographic finish line",
        lighting="bright stadium lighting with holographic effects",
        color_treatment="full color vibrant with neon accents",
        composition="finish line centered, stadium surroundings",
        time_period="future",
        era="2050s",
        pose="walking",
    ),
    BackgroundDefinition(
        identifier="tcs50-firstmarathon",
        name="The First Marathon",
        file_name="TCS50-FirstMarathon.png",
        category="tcs50",
        description="1970s Olympic Stadium finish line",
        lighting="vintage 70s photography lighting",
        color_treatment="slightly desaturated 70s color palette",
        composition="track finish line centered",
        time_period="past",
        era="1970s",
        pose="walking",
    ),
    BackgroundDefinition(
        identifier="tcs50-iamsterdam",
        name="I Amsterdam",
        file_name="TCS50-Iamsterdam.png",
        category="tcs50",
        description="Modern marathon at the iconic I Amsterdam sign",
        lighting="bright modern daylight",
        color_treatment="full color contemporary photography",
        composition="sign and runners centered",
    ),
    BackgroundDefinition(
        identifier="amsterdam-canal",
        name="Amsterdam Canal - Historic",
        file_name="amsterdam-canal.png",
        category="classic",
        description="Historic Amsterdam canal with traditional Dutch houses, flower market scene",
        lighting="overcast Northern European light, soft shadows",
        color_treatment="sepia vintage filter with muted browns and yellows",
        composition="canal on left, street path on right side",
        time_period="past",
        era="early 1900s",
    ),
    BackgroundDefinition(
        identifier="vondelpark",
        name="Vondelpark - Modern",
        file_name="vondelpark.jpg",
        category="classic",
        description="Green park setting with trees and pathways",
        lighting="dappled sunlight through trees, natural green tones",
        color_treatment="full color natural tones",
        composition="centered park path",
    ),
    BackgroundDefinition(
        identifier="dam-square",
        name="Dam Square - Contemporary",
        file_name="dam-square.jpg",
        category="classic",
        description="Bustling city center with historic buildings",
        lighting="urban daylight, mixed shadows from buildings",
        color_treatment="full color modern photography",
        composition="wide open square, centered composition",
    ),
    BackgroundDefinition(
        identifier="olympic-stadium",
        name="Olympic Stadium - Future",
        file_name="olympic-stadium.png",
        category="classic",
        description="Futuristic stadium setting with advanced architecture",
        lighting="bright athletic venue lighting",
        color_treatment="full color vibrant tones",
        composition="stadium entrance, centered",
        time_period="future",
        era="2050s",
    ),
)


class BackgroundCatalog:
    """
    Resolves background selections and loads their reference images.

    Args:
        assets_directory: Directory holding the background image files.
        backgrounds: The selectable backgrounds; defaults to the booth's
            standard set.
        thumbnail_url_prefix: Public URL prefix the background files are
            served under, used in the category listing.
    """

    def __init__(
        self,
        assets_directory: pathlib.Path | str,
        backgrounds: typing.Iterable[BackgroundDefinition] = DEFAULT_BACKGROUNDS,
        thumbnail_url_prefix: str = "/backgrounds",
    ) -> None:
        self._assets_directory = pathlib.Path(assets_directory)
        self._backgrounds_by_identifier = {background.identifier: background for background in backgrounds}
        self._thumbnail_url_prefix = thumbnail_url_prefix.rstrip("/")

    @property
    def assets_directory(self) -> pathlib.Path:
        return self._assets_directory

    def __len__(self) -> int:
        return len(self._backgrounds_by_identifier)

    def resolve(self, background_identifier: str) -> BackgroundDefinition:
        """
        Raises:
            InvalidBackgroundSelectionError: The identifier is not in the catalog.
        """
        try:
            return self._backgrounds_by_identifier[background_identifier]
        except KeyError:
            raise photobooth.exceptions.InvalidBackgroundSelectionError(
                detail=f"The background '{background_identifier}' does not exist.",
            ) from None

    async def load_asset(self, background: BackgroundDefinition) -> bytes:
        """
        Read the background's reference image.

        Raises:
            AssetReadError: The file is missing or unreadable.  The
                underlying ``OSError`` is chained as the cause.
        """
        asset_path = self._assets_directory / background.file_name
        try:
            return await asyncio.to_thread(asset_path.read_bytes)
        except OSError as read_error:
            logger.error(
                "background_asset_read_failed",
                background_identifier=background.identifier,
                asset_path=str(asset_path),
                error=str(read_error),
            )
            raise photobooth.exceptions.AssetReadError(
                detail=f"The image for background '{background.identifier}' could not be loaded.",
            ) from read_error

    def list_by_category(self) -> dict[str, dict[str, typing.Any]]:
        """
        Group backgrounds for the selection screen.

        Returns a mapping of category identifier to ``{"name", "backgrounds"}``
        in category display order.  Categories without backgrounds are omitted.
        """
        listing: dict[str, dict[str, typing.Any]] = {}
        for category in CATEGORIES:
            entries = [
                {
                    "id": background.identifier,
                    "name": background.name,
                    "description": background.description,
                    "thumbnail": f"{self._thumbnail_url_prefix}/{background.file_name}",
                }
                for background in self._backgrounds_by_identifier.values()
                if background.category == category.identifier
            ]
            if entries:
                listing[category.identifier] = {"name": category.display_name, "backgrounds": entries}
        return listing

    def check_health(self) -> bool:
        """Report whether the assets directory exists."""
        return self._assets_directory.is_dir()
