"""
Subscription registry — the single owner of which addresses are watched.

Consumers express intent as TokenWatch values. The registry turns a list of
them into a SubscriptionSet: one account filter per token (token_0, token_1,
...) and one aggregate transaction filter (token_txs) over every address.
All mutation goes through commit() (replace() wraps it); everything else is
read-only.
"""
import logging
from dataclasses import dataclass, field

logger = logging.getLogger("subscriptions")

TX_FILTER_LABEL = "token_txs"
SLOT_FILTER_LABEL = "slots"
DEFAULT_COMMITMENT = "CONFIRMED"


@dataclass(frozen=True)
class TokenWatch:
    mint: str
    creator: str

    @property
    def addresses(self) -> list[str]:
        return [self.mint, self.creator]


@dataclass(frozen=True)
class SubscriptionSet:
    """One generation of upstream filters. Never mutated after creation."""

    accounts: dict[str, list[str]] = field(default_factory=dict)  # label -> addresses
    generation: int = 0

    @property
    def labels(self) -> list[str]:
        return list(self.accounts)

    @property
    def addresses(self) -> list[str]:
        """Union of watched addresses, in label order. Duplicates preserved."""
        return [addr for addrs in self.accounts.values() for addr in addrs]

    def account_filters(self) -> dict:
        return {
            label: {"account": list(addrs), "owner": [], "filters": []}
            for label, addrs in self.accounts.items()
        }

    def transaction_filters(self) -> dict:
        """Always exactly one filter, even for an empty token list."""
        return {
            TX_FILTER_LABEL: {
                "vote": False,
                "failed": False,
                "accountInclude": self.addresses,
                "accountExclude": [],
                "accountRequired": [],
            }
        }

    def to_request(self, commitment: str = DEFAULT_COMMITMENT) -> dict:
        """Upstream SubscribeRequest shape for this generation."""
        return {
            "slots": {SLOT_FILTER_LABEL: {}},
            "accounts": self.account_filters(),
            "transactions": self.transaction_filters(),
            "blocks": {},
            "blocksMeta": {},
            "accountsDataSlice": [],
            "entry": {},
            "commitment": commitment,
        }


def empty_request() -> dict:
    """Request with every filter category empty; it clears the upstream filter."""
    return {
        "slots": {},
        "accounts": {},
        "transactions": {},
        "blocks": {},
        "blocksMeta": {},
        "accountsDataSlice": [],
        "entry": {},
    }


def ping_request(ping_id: int, base: dict | None = None) -> dict:
    """
    Keepalive request. Carries the filter currently in effect so that a
    server treating every request as a filter replacement keeps streaming.
    """
    request = dict(base) if base is not None else empty_request()
    request["ping"] = {"id": ping_id}
    return request


class SubscriptionRegistry:
    """
    Holds the current SubscriptionSet.

    prepare() builds the next generation without touching the current one;
    commit() makes it current. replace() does both for callers that have no
    upstream write in between.
    """

    def __init__(self):
        self._current = SubscriptionSet()

    @property
    def current(self) -> SubscriptionSet:
        return self._current

    def prepare(self, token_watches: list[TokenWatch]) -> SubscriptionSet:
        accounts = {
            f"token_{i}": watch.addresses
            for i, watch in enumerate(token_watches)
        }
        return SubscriptionSet(
            accounts=accounts,
            generation=self._current.generation + 1,
        )

    def commit(self, subscription: SubscriptionSet) -> SubscriptionSet:
        self._current = subscription
        logger.info(
            f"Subscription set #{subscription.generation}: "
            f"{len(subscription.accounts)} token(s), {len(subscription.addresses)} address(es)"
        )
        return subscription

    def replace(self, token_watches: list[TokenWatch]) -> SubscriptionSet:
        return self.commit(self.prepare(token_watches))
