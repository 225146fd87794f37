# src/daproof/submitters.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Sequence, Tuple


class Environment(str, Enum):
    POLYGON = "POLYGON"
    MUMBAI = "MUMBAI"
    SANDBOX = "SANDBOX"


class Deployment(str, Enum):
    PRODUCTION = "PRODUCTION"
    STAGING = "STAGING"
    LOCAL = "LOCAL"


@dataclass(frozen=True)
class NetworkProfile:
    chain_id: int
    hub_contract: str
    submitters: Tuple[str, ...]


_HUB_CONTRACTS: Dict[Environment, str] = {
    Environment.POLYGON: "0xdb46d1dc155634fbc732f92e853b10b288ad5a1d",
    Environment.MUMBAI: "0x60ae865ee4c725cd04353b5aab364553f56cef82",
    Environment.SANDBOX: "0x7582177f9e536ab0b6c721e11f383c326f2ad1d5",
}

_CHAIN_IDS: Dict[Environment, int] = {
    Environment.POLYGON: 137,
    Environment.MUMBAI: 80001,
    Environment.SANDBOX: 80001,
}

# Unlisted (environment, deployment) pairs are unsupported.
_SUBMITTERS: Dict[Tuple[Environment, Deployment], Tuple[str, ...]] = {
    (Environment.POLYGON, Deployment.PRODUCTION): ("0xbe29464b9784a0d8956f29630d8bc4d7b5737435",),
    (Environment.MUMBAI, Deployment.PRODUCTION): ("0xee3e8f53df70c3a3eeda2076cdca17c451aa8f96",),
    (Environment.MUMBAI, Deployment.STAGING): ("0x122938fe0d1fc6e00ef1b814cd7e44677e99b4f7",),
    (Environment.MUMBAI, Deployment.LOCAL): ("0x8fc176aa6fc843d3422f0c1832f1b9e17be00c1c",),
}


def parse_environment(v: str) -> Environment:
    try:
        return Environment(str(v or "").strip().upper())
    except ValueError:
        raise ValueError(f"environment must be one of {[e.value for e in Environment]}; got: {v!r}") from None


def parse_deployment(v: str) -> Deployment:
    try:
        return Deployment(str(v or "").strip().upper())
    except ValueError:
        raise ValueError(f"deployment must be one of {[d.value for d in Deployment]}; got: {v!r}") from None


def get_submitters(environment: Environment, deployment: Deployment = Deployment.PRODUCTION) -> List[str]:
    """Lower-cased submitter whitelist for an environment/deployment pair."""
    subs = _SUBMITTERS.get((environment, deployment))
    if subs is None:
        raise ValueError(f"unsupported environment/deployment: {environment.value}/{deployment.value}")
    return [s.lower() for s in subs]


def is_valid_submitter(environment: Environment, address: str, deployment: Deployment = Deployment.PRODUCTION) -> bool:
    return str(address or "").strip().lower() in get_submitters(environment, deployment)


def network_profile(
    environment: Environment,
    deployment: Deployment,
    extra_submitters: Sequence[str] = (),
) -> NetworkProfile:
    """Chain constants for a pair. `extra_submitters` widen the whitelist (local setups)."""
    subs = get_submitters(environment, deployment)
    for s in extra_submitters:
        a = str(s or "").strip().lower()
        if a and a not in subs:
            subs.append(a)
    return NetworkProfile(
        chain_id=_CHAIN_IDS[environment],
        hub_contract=_HUB_CONTRACTS[environment],
        submitters=tuple(subs),
    )
