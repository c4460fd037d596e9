"""Region and availability zone resolution."""

from .errors import ConfigurationError
from .utils import log

DEFAULT_REGION = "us-east-2"
DEFAULT_ZONE = "us-east-2a"
DEFAULT_IMAGE_ID = "ami-e90bc65c"  # CentOS-8-2021.02.04-0

REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ca-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-west-3",
    "eu-central-1",
    "eu-north-1",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-south-1",
    "sa-east-1",
    "cloudgouv-eu-west-1",
]

# Images known to exist per region; other regions need an explicit image id.
DEFAULT_IMAGES = {
    DEFAULT_REGION: DEFAULT_IMAGE_ID,
}


def validate_region(region: str, endpoint: str | None = None) -> str:
    """Validate a region name, normalizing an availability zone to its region.

    A custom endpoint talks to a gateway with its own region names, so an
    unknown region is accepted as-is in that case.

    :param region: Region (or availability zone) requested by the user
    :param endpoint: Custom API endpoint, if any
    :return: Normalized region name
    :raises ConfigurationError: If the region is unknown and no endpoint is set
    """
    if region in REGIONS:
        return region

    if region and region[-1].isalpha() and region[:-1] in REGIONS:
        normalized = region[:-1]
        log(f"Converted availability zone '{region}' to region '{normalized}'")
        return normalized

    if endpoint:
        return region

    raise ConfigurationError(
        f"Invalid region: '{region}'\n"
        f"Valid regions: '{', '.join(REGIONS[:6])}', ..."
    )


def region_zone(region: str, zone: str, endpoint: str | None = None) -> str:
    """Resolve the availability zone identifier for instance placement.

    Without a custom endpoint the zone is a suffix (``a``) appended to the
    region; a zone that already names its region is used verbatim.
    """
    if endpoint or zone.startswith(region):
        return zone
    return region + zone


def default_image(region: str) -> str:
    """:raises ConfigurationError: If no default image is known for the region"""
    try:
        return DEFAULT_IMAGES[region]
    except KeyError:
        raise ConfigurationError(
            f"No default image for region '{region}', set an image id explicitly"
        ) from None
