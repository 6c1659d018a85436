import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def load_config(path: str | Path | None = None) -> dict:
    """Read the TOML config and fill in the defaults the code relies on."""
    path = Path(path or os.getenv("SAMPLER_CONFIG", config_file))
    conf = tomllib.loads(path.read_text())

    ra = conf.setdefault("root_account", {})
    ra["address"] = ra.get("address", "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh")
    ra["seed"] = ra.get("seed", "snoPBrXtMeMyMHUVTgbuqAfg1SUTb")
    ra["algorithm"] = ra.get("algorithm", "secp256k1")

    sampler = conf.setdefault("sampler", {})
    if seed := os.getenv("SAMPLER_SEED"):
        sampler["seed"] = int(seed)
    conf.setdefault("operations", {}).setdefault("weights", {})
    conf.setdefault("initializer", {})
    return conf


cfg = load_config()
