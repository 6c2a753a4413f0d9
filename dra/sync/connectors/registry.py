"""
Connector registry.

Maps each data source type to the connector instance that handles it.
"""

import logging
from typing import Dict, List, Optional

from dra.sync.connectors.api.google_ad_manager import GoogleAdManagerConnector
from dra.sync.connectors.api.google_ads import GoogleAdsConnector
from dra.sync.connectors.api.google_analytics import GoogleAnalyticsConnector
from dra.sync.connectors.api.hubspot import HubSpotConnector
from dra.sync.connectors.api.klaviyo import KlaviyoConnector
from dra.sync.connectors.api.linkedin_ads import LinkedInAdsConnector
from dra.sync.connectors.api.meta_ads import MetaAdsConnector
from dra.sync.connectors.api.oauth import ApiClient
from dra.sync.connectors.base import BaseConnector, ConnectorServices
from dra.sync.connectors.database.relational import RelationalConnector
from dra.sync.connectors.document.mongodb import MongoDBConnector
from dra.sync.connectors.file.pdf import PDFConnector
from dra.sync.connectors.file.spreadsheet import SpreadsheetConnector
from dra.sync.errors import SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Data source type -> connector."""

    def __init__(self):
        self._connectors: Dict[DataSourceType, BaseConnector] = {}

    def register(self, connector: BaseConnector) -> None:
        for data_type in connector.data_types:
            if data_type in self._connectors:
                logger.warning(f"Replacing connector for {data_type.value}")
            self._connectors[data_type] = connector

    def get(self, data_type) -> BaseConnector:
        try:
            return self._connectors[DataSourceType(data_type)]
        except (KeyError, ValueError):
            raise SchemaError(f"No connector registered for data source type '{data_type}'")

    def supported_types(self) -> List[DataSourceType]:
        return list(self._connectors.keys())


def build_default_registry(services: ConnectorServices, http: Optional[ApiClient] = None) -> ConnectorRegistry:
    """Registry with every built-in connector."""
    registry = ConnectorRegistry()
    registry.register(RelationalConnector(services))
    registry.register(MongoDBConnector(services))
    registry.register(SpreadsheetConnector(services))
    registry.register(PDFConnector(services))
    registry.register(GoogleAnalyticsConnector(services, http))
    registry.register(GoogleAdsConnector(services, http))
    registry.register(GoogleAdManagerConnector(services, http))
    registry.register(MetaAdsConnector(services, http))
    registry.register(LinkedInAdsConnector(services, http))
    registry.register(HubSpotConnector(services, http))
    registry.register(KlaviyoConnector(services, http))
    return registry
