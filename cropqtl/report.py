import json
import os
import platform
import re
import sys
from datetime import datetime
from importlib import metadata
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from cropqtl.log import logger

SESSION_PACKAGES = ("numpy", "pandas", "scipy", "matplotlib", "statsmodels", "scikit-learn", "pysam")


def safe_name(name: str) -> str:
    """File-system safe version of a trait or SNP name."""
    safe = re.sub(r"[^\w.-]+", "_", str(name).strip())
    return safe or "trait"


def save_table(df: pd.DataFrame, path: str, sep: Optional[str] = None, index: bool = False) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    if sep is None:
        sep = "," if path.endswith(".csv") else "\t"
    df.to_csv(path, sep=sep, index=index, float_format="%.6g")
    logger.info(f"Saved {len(df)} rows to {path}")
    return path


def save_json(payload: dict, path: str) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, default=_json_default)
        handle.write("\n")
    return path


def _json_default(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def save_result(result, out_dir: str = ".", out_name: Optional[str] = None,
                thresholds: Optional[Dict[float, float]] = None) -> str:
    """
    Persist a trait analysis result as CSV tables plus a JSON manifest.

    :param result: FullResult or PartialResult
    :param out_dir: Output directory
    :param out_name: File prefix; defaults to the trait name
    :param thresholds: Optional {alpha: LOD} permutation thresholds to record
    :return: Path of the JSON manifest
    """
    prefix = os.path.join(out_dir, safe_name(out_name or result.trait))
    files = {
        "scan": save_table(result.scan, f"{prefix}.scan.csv"),
        "perms": save_table(pd.DataFrame({"max_lod": result.perms}), f"{prefix}.perms.csv"),
    }
    manifest = {
        "trait": result.trait,
        "kind": result.kind,
        "threshold": result.threshold,
        "n_perm": int(len(result.perms)),
        "max_lod": float(result.scan["lod"].max()),
        "created": datetime.now().isoformat(timespec="seconds"),
    }
    if thresholds:
        manifest["perm_thresholds"] = {str(a): v for a, v in thresholds.items()}

    if result.kind == "full":
        model = result.model
        files["candidates"] = save_table(result.candidates, f"{prefix}.qtl.csv")
        files["loci"] = save_table(model.loci, f"{prefix}.loci.csv")
        files["effects"] = save_table(model.effects, f"{prefix}.effects.csv")
        files["anova"] = save_table(model.anova, f"{prefix}.anova.csv")
        manifest["model"] = {"lod": model.lod, "pvar": model.pvar, "n": model.n, "loci": model.loci["name"].tolist()}
    else:
        manifest["diagnostic"] = result.diagnostic

    manifest["files"] = {k: os.path.basename(v) for k, v in files.items()}
    path = save_json(manifest, f"{prefix}.result.json")
    logger.info(f"Result bundle for trait '{result.trait}' saved to {path}")
    return path


def package_versions(packages: Iterable[str] = SESSION_PACKAGES) -> Dict[str, str]:
    versions = {}
    for name in packages:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            versions[name] = "not installed"
    return versions


def write_session_info(out_dir: str = ".", argv: Optional[List[str]] = None,
                       file_name: str = "session_info.txt") -> str:
    """
    Write a plain-text report of the interpreter, platform and package versions.
    """
    try:
        own_version = metadata.version("cropqtl")
    except metadata.PackageNotFoundError:
        own_version = "unknown"
    lines = [
        f"cropqtl {own_version}",
        f"Date: {datetime.now().isoformat(timespec='seconds')}",
        f"Python: {sys.version.split()[0]} ({platform.python_implementation()})",
        f"Platform: {platform.platform()}",
    ]
    if argv:
        lines.append(f"Command: {' '.join(argv)}")
    lines.append("")
    lines.append("Packages:")
    lines.extend(f"  {name}: {version}" for name, version in package_versions().items())

    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, file_name)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines) + "\n")
    logger.info(f"Session information saved to {path}")
    return path
