"""
Region discovery for the two region filter modes.

- ControlTower: the regions the Control Tower landing zone governs
- SecurityHub: every region Security Hub is offered in and the organization
  has enabled
"""

import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class RegionSource:
    """Looks up candidate regions using the engine's own credentials."""

    def __init__(self, primary_region: str, session: boto3.Session = None):
        self.primary_region = primary_region
        self.session = session or boto3.Session()

    def governed_regions(self) -> list:
        """Regions governed by the Control Tower landing zone.

        Returns an empty list when no landing zone is found.
        """
        try:
            ct_client = self.session.client("controltower", region_name=self.primary_region)

            # List landing zones - returns at most one per organization
            landing_zones = ct_client.list_landing_zones().get("landingZones", [])
            if not landing_zones or not landing_zones[0].get("arn"):
                return []

            lz_details = ct_client.get_landing_zone(
                landingZoneIdentifier=landing_zones[0]["arn"]
            )
            manifest = lz_details.get("landingZone", {}).get("manifest", {})
            if isinstance(manifest, dict):
                return sorted(manifest.get("governedRegions", []))
            return []

        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code == "AccessDeniedException":
                logger.warning("Access denied to Control Tower APIs")
            elif error_code != "ResourceNotFoundException":
                logger.warning("Control Tower API error: %s", e)
            return []

    def enabled_regions(self) -> list:
        """Regions enabled for the management account.

        Returns regions where opt-in-status is 'opt-in-not-required' or
        'opted-in', or an empty list if they could not be described.
        """
        try:
            ec2_client = self.session.client("ec2", region_name=self.primary_region)
            response = ec2_client.describe_regions(AllRegions=True)
        except (ClientError, BotoCoreError) as e:
            logger.warning("Could not describe regions: %s", e)
            return []

        return sorted(
            region["RegionName"]
            for region in response.get("Regions", [])
            if region.get("OptInStatus") in ("opt-in-not-required", "opted-in")
        )

    def securityhub_regions(self) -> list:
        """Regions where Security Hub is available and enabled for us."""
        offered = set(self.session.get_available_regions("securityhub"))
        enabled = set(self.enabled_regions())
        if enabled:
            offered &= enabled
        return sorted(offered)

    def regions_for(self, region_filter: str) -> list:
        if region_filter == "ControlTower":
            regions = self.governed_regions()
            if not regions:
                logger.warning(
                    "No Control Tower landing zone found; using %s only", self.primary_region
                )
                regions = [self.primary_region]
            return regions
        return self.securityhub_regions()
