import random
from enum import Enum


class AAllBaseUrls:
    BASE_URL_v2 = "https://api2.axiom.trade"
    BASE_URL_v3 = "https://api3.axiom.trade"
    BASE_URL_v6 = "https://api6.axiom.trade"
    BASE_URL_v7 = "https://api7.axiom.trade"
    BASE_URL_v8 = "https://api8.axiom.trade"
    BASE_URL_v9 = "https://api9.axiom.trade"
    BASE_URL_v10 = "https://api10.axiom.trade"

    # Interchangeable API hosts, one is picked per request attempt
    API_SERVERS = (
        BASE_URL_v2,
        BASE_URL_v3,
        BASE_URL_v6,
        BASE_URL_v7,
        BASE_URL_v8,
        BASE_URL_v9,
        BASE_URL_v10,
    )


class AxiomTradeApiUrls:
    LOGIN_STEP1 = "/login-password-v2"
    LOGIN_STEP2 = "/login-otp"
    REFRESH_TOKEN = "/refresh-access-token"


ORIGIN = "https://axiom.trade"


class Region(str, Enum):
    """Regional websocket clusters."""

    US_WEST = "us-west"
    US_CENTRAL = "us-central"
    US_EAST = "us-east"
    EU_WEST = "eu-west"
    EU_CENTRAL = "eu-central"
    EU_EAST = "eu-east"
    ASIA = "asia"
    AUSTRALIA = "australia"
    GLOBAL = "global"

    @property
    def hosts(self) -> tuple[str, ...]:
        return _REGION_HOSTS[self]

    def websocket_url(self) -> str:
        return f"wss://{random.choice(self.hosts)}/"


_REGION_HOSTS: dict[Region, tuple[str, ...]] = {
    Region.US_WEST: ("socket8.axiom.trade", "cluster-usw2.axiom.trade"),
    Region.US_CENTRAL: ("cluster3.axiom.trade", "cluster-usc2.axiom.trade"),
    Region.US_EAST: ("cluster5.axiom.trade", "cluster-use2.axiom.trade"),
    Region.EU_WEST: ("cluster6.axiom.trade", "cluster-euw2.axiom.trade"),
    Region.EU_CENTRAL: ("cluster2.axiom.trade", "cluster-euc2.axiom.trade"),
    Region.EU_EAST: ("cluster8.axiom.trade",),
    Region.ASIA: ("cluster4.axiom.trade",),
    Region.AUSTRALIA: ("cluster7.axiom.trade",),
    Region.GLOBAL: ("cluster9.axiom.trade",),
}
