"""Data models for raw positions, composite positions, prices, and portfolio summaries."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

NATIVE_ADDRESS = "native"


class PositionTag(StrEnum):
    """Position type reported by the discovery provider, normalized at ingestion."""

    WALLET = "wallet"
    DEPOSIT = "deposit"
    LOAN = "loan"
    BORROW = "borrow"
    STAKED = "staked"
    STAKING = "staking"
    REWARD = "reward"
    CLAIMABLE = "claimable"
    LIQUIDITY = "liquidity"
    YIELD = "yield"
    LOCKED = "locked"
    VESTING = "vesting"
    FARMING = "farming"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "PositionTag":
        """Map a provider string to a tag, falling back to OTHER."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.OTHER


class ProtocolModule(StrEnum):
    """Protocol module hint reported by the discovery provider."""

    LENDING = "lending"
    FARMING = "farming"
    STAKING = "staking"
    LIQUIDITY_POOL = "liquidity_pool"
    VAULT = "vault"
    YIELD = "yield"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "ProtocolModule":
        """Map a provider string to a module, falling back to UNKNOWN."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class TokenRole(StrEnum):
    """Role a token plays inside a position."""

    SUPPLIED = "supplied"
    BORROWED = "borrowed"
    REWARD = "reward"
    UNDERLYING = "underlying"


class Category(StrEnum):
    """Closed set of portfolio categories."""

    FARMING = "Farming"
    LENDING = "Lending"
    STAKING = "Staking"
    LIQUIDITY_POOL = "LiquidityPool"
    YIELD = "Yield"
    REWARDS = "Rewards"
    VAULT = "Vault"
    OTHER = "Other"


class PriceSource(StrEnum):
    """Where a token's unit price came from."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    FALLBACK = "fallback"


class DiscoveryFilter(StrEnum):
    """Position filter accepted by the discovery provider."""

    ONLY_SIMPLE = "only_simple"
    ONLY_COMPLEX = "only_complex"
    NO_FILTER = "no_filter"


class TokenReference(BaseModel, frozen=True):
    """
    Identity of a token on a network.

    Attributes
    ----------
    address : str
        Contract address, or ``"native"`` for the chain's gas token
    network : str
        Network name (e.g., 'ethereum', 'base')

    """

    address: str
    network: str

    @field_validator("address", "network", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @property
    def key(self) -> str:
        """Stable string key used for cache entries and price lookups."""
        return f"{self.network}:{self.address}"

    @property
    def is_native(self) -> bool:
        return self.address == NATIVE_ADDRESS


class PositionToken(BaseModel):
    """
    Token held inside a position.

    Attributes
    ----------
    role : TokenRole
        Role of the token within the position
    symbol : str
        Token symbol (e.g., 'USDC')
    address : str
        Contract address, or ``"native"``
    network : str
        Network the token lives on
    amount : Decimal
        Human-readable token amount
    decimals : int
        Token decimals
    unit_price_usd : Decimal | None
        Unit price in USD, if known
    value_usd : Decimal | None
        USD value of ``amount``, if known
    price_source : PriceSource | None
        Origin of ``unit_price_usd`` once prices have been applied

    """

    role: TokenRole = TokenRole.UNDERLYING
    symbol: str = ""
    name: str = ""
    address: str = NATIVE_ADDRESS
    network: str = ""
    amount: Decimal = Decimal("0")
    decimals: int = 18
    unit_price_usd: Decimal | None = None
    value_usd: Decimal | None = None
    price_source: PriceSource | None = None

    @property
    def ref(self) -> TokenReference:
        return TokenReference(address=self.address or NATIVE_ADDRESS, network=self.network)


class RawPosition(BaseModel):
    """
    One position as returned by the discovery provider.

    Provider vocabulary (``position_type``, ``protocol_module``) is parsed into closed
    enums here, so nothing downstream string-matches provider tags.

    Attributes
    ----------
    id : str
        Provider position identifier
    protocol_id : str
        Protocol identifier (e.g., 'aave-v3')
    network : str
        Network name
    position_type : PositionTag
        Provider position type
    protocol_module : ProtocolModule
        Provider module hint ('lending', 'farming', ...)
    correlation_key : str | None
        Provider ``group_id`` linking positions of one composite
    market : str | None
        Market identifier used to pair lending supply/borrow legs
    value_usd : Decimal
        Provider-reported USD value at discovery time

    """

    id: str = Field(min_length=1)
    protocol_id: str = Field(min_length=1)
    protocol_name: str = ""
    network: str = Field(min_length=1)
    position_type: PositionTag = PositionTag.OTHER
    protocol_module: ProtocolModule = ProtocolModule.UNKNOWN
    correlation_key: str | None = None
    market: str | None = None
    pool_address: str | None = None
    name: str = ""
    tokens: list[PositionToken] = Field(default_factory=list)
    value_usd: Decimal
    health_factor: Decimal | None = None
    net_apy: Decimal | None = None

    @field_validator("position_type", mode="before")
    @classmethod
    def _parse_tag(cls, value: Any) -> PositionTag:
        return PositionTag.parse(value)

    @field_validator("protocol_module", mode="before")
    @classmethod
    def _parse_module(cls, value: Any) -> ProtocolModule:
        return ProtocolModule.parse(value)

    @field_validator("correlation_key", "market", "pool_address", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class FarmingDetails(BaseModel):
    """Breakdown of a farming composite (staked tokens plus their rewards)."""

    kind: Literal["farming"] = "farming"
    staked_value_usd: Decimal = Decimal("0")
    rewards_value_usd: Decimal = Decimal("0")
    staked_count: int = 0
    rewards_count: int = 0


class LendingDetails(BaseModel):
    """Breakdown of a lending composite (supplied minus borrowed)."""

    kind: Literal["lending"] = "lending"
    supplied_value_usd: Decimal = Decimal("0")
    borrowed_value_usd: Decimal = Decimal("0")
    net_value_usd: Decimal = Decimal("0")
    is_debt: bool = False


PositionDetails = Annotated[FarmingDetails | LendingDetails, Field(discriminator="kind")]


class AggregatedPosition(BaseModel):
    """
    A raw position, or a merge of raw positions forming one logical composite.

    Attributes
    ----------
    id : str
        Identifier (the first contributing raw position's id)
    label : str
        Human label ('Farming', 'Lending' or the provider position name)
    position_tags : list[PositionTag]
        Sorted, de-duplicated tags of all contributing raw positions
    member_ids : list[str]
        Ids of the contributing raw positions, in input order
    total_value_usd : Decimal
        Sum of contributing raw ``value_usd`` (borrowed legs count negatively)
    details : FarmingDetails | LendingDetails | None
        Variant breakdown depending on the merge rule applied

    """

    id: str
    protocol_id: str
    protocol_name: str = ""
    network: str
    label: str = ""
    protocol_module: ProtocolModule = ProtocolModule.UNKNOWN
    position_type: PositionTag = PositionTag.OTHER
    position_tags: list[PositionTag] = Field(default_factory=list)
    correlation_key: str | None = None
    market: str | None = None
    pool_address: str | None = None
    member_ids: list[str] = Field(default_factory=list)
    total_value_usd: Decimal = Decimal("0")
    tokens: list[PositionToken] = Field(default_factory=list)
    details: PositionDetails | None = None
    health_factor: Decimal | None = None
    net_apy: Decimal | None = None


class CategorizedPosition(AggregatedPosition):
    """An aggregated position tagged with exactly one category."""

    category: Category


class AggregationResult(BaseModel):
    """Output of the aggregator: composites plus the count of rejected inputs."""

    positions: list[AggregatedPosition] = Field(default_factory=list)
    skipped_count: int = 0


class StructureSnapshot(BaseModel):
    """
    Cached "structure" of a wallet: what it holds, without live prices.

    Attributes
    ----------
    wallet : str
        Wallet address (lower-cased)
    networks : list[str]
        Sorted networks the discovery call covered
    positions : list[CategorizedPosition]
        Aggregated and categorized positions
    by_network : dict[str, list[str]]
        Position ids grouped per network
    skipped_count : int
        Raw positions rejected as malformed
    discovered_at : datetime
        When the discovery call completed

    """

    wallet: str
    networks: list[str] = Field(default_factory=list)
    positions: list[CategorizedPosition] = Field(default_factory=list)
    by_network: dict[str, list[str]] = Field(default_factory=dict)
    skipped_count: int = 0
    discovered_at: datetime

    def token_references(self) -> list[TokenReference]:
        """Unique token references across all positions, sorted by key."""
        refs = {token.ref.key: token.ref for position in self.positions for token in position.tokens}
        return [refs[key] for key in sorted(refs)]


class PriceQuote(BaseModel):
    """Unit price of one token at a point in time."""

    unit_price_usd: Decimal
    as_of: datetime
    source: PriceSource


class TokenMetadata(BaseModel):
    """
    Token metadata returned by the price/metadata provider.

    Attributes
    ----------
    symbol : str
        Token symbol
    decimals : int | None
        Token decimals, when the provider knows them
    price_usd : Decimal | None
        Current unit price in USD
    confidence : float | None
        Provider confidence score for the price (0..1)
    as_of : datetime
        Timestamp of the price

    """

    symbol: str = ""
    decimals: int | None = None
    price_usd: Decimal | None = None
    confidence: float | None = None
    as_of: datetime


class PriceSnapshot(BaseModel):
    """Cached "price" entry: quotes keyed by ``TokenReference.key``."""

    quotes: dict[str, PriceQuote] = Field(default_factory=dict)
    complete: bool = True

    def get(self, ref: TokenReference) -> PriceQuote | None:
        return self.quotes.get(ref.key)


class PricedPosition(CategorizedPosition):
    """A categorized position valued with the latest price quotes."""

    value_usd: Decimal = Decimal("0")
    price_source: PriceSource = PriceSource.FALLBACK


class EnrichmentStats(BaseModel):
    """Counters describing one enrichment batch."""

    dispatched: int = 0
    started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    timed_out: bool = False


class PortfolioSummary(BaseModel):
    """
    Aggregated, categorized and priced view of a wallet.

    Attributes
    ----------
    wallet : str
        Wallet address
    networks : list[str]
        Networks covered
    positions : list[PricedPosition]
        All positions with live values
    total_value_usd : Decimal
        Total portfolio value in USD
    by_category : dict[str, Decimal]
        USD value breakdown by category
    by_network : dict[str, Decimal]
        USD value breakdown by network
    by_protocol : dict[str, Decimal]
        USD value breakdown by protocol
    structure_from_cache : bool
        Whether the structure came from the cache
    prices_from_cache : bool
        Whether the prices came from the cache
    fallback_token_count : int
        Tokens valued with the discovery-time value because no quote was available

    """

    wallet: str
    networks: list[str] = Field(default_factory=list)
    positions: list[PricedPosition] = Field(default_factory=list)
    total_value_usd: Decimal = Decimal("0")
    by_category: dict[str, Decimal] = Field(default_factory=dict)
    by_network: dict[str, Decimal] = Field(default_factory=dict)
    by_protocol: dict[str, Decimal] = Field(default_factory=dict)
    structure_from_cache: bool = False
    prices_from_cache: bool = False
    skipped_count: int = 0
    fallback_token_count: int = 0
    enrichment: EnrichmentStats | None = None
    discovered_at: datetime | None = None
