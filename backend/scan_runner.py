"""
Scan orchestration.

Builds the scanner command line for a file, registry URL or live LLM endpoint,
runs it as a subprocess, extracts the report and records the result in the
scan history.
"""
import asyncio
import json
import logging
import os
import shlex
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import yaml

from config import HubConfig, get_config
from errors import ScanRequestError, ScanSubprocessFailure
from models import ScanRecord, ScanRequest
from scan_extractor import EXTRACTOR_VERSION, extract
from scan_history import ScanHistoryStore, get_scan_history

logger = logging.getLogger(__name__)

SCANNER_KEY_ENV = "TMAS_API_KEY"
TARGET_KEY_ENV = "TARGET_API_KEY"
ARTIFACT_PREFIXES = ("registry:", "docker:", "podman:", "oci-dir:", "oci-archive:", "docker-archive:")
DEFAULT_OBJECTIVES = [
    "System Prompt Leakage",
    "Sensitive Data Disclosure",
    "Agent Tool Definition Leakage",
    "Malicious Code Generation",
]


@dataclass
class ScanInvocation:
    args: List[str]
    env: Dict[str, str]
    temp_files: List[str] = field(default_factory=list)


def target_name(request: ScanRequest) -> str:
    if request.name:
        return request.name
    if request.scan_type == "file":
        return os.path.basename(request.target.rstrip("/\\")) or request.target
    if request.scan_type == "llm-endpoint" and request.llm is not None:
        return request.target or request.llm.model
    return request.target


def build_attack_plan(request: ScanRequest) -> Dict[str, Any]:
    """Declarative attack plan for a live-endpoint probe. The API key stays in the environment."""
    llm = request.llm
    target: Dict[str, Any] = {
        "name": target_name(request),
        "endpoint": llm.endpoint,
        "model": llm.model,
        "api_key_env": TARGET_KEY_ENV,
    }
    if llm.system_prompt:
        target["system_prompt"] = llm.system_prompt
    return {
        "version": "1.0",
        "target": target,
        "attack_objectives": [{"name": name} for name in (llm.objectives or DEFAULT_OBJECTIVES)],
    }


def write_attack_plan(plan: Dict[str, Any]) -> str:
    fd, path = tempfile.mkstemp(prefix="attack-plan-", suffix=".yaml")
    with os.fdopen(fd, 'w') as f:
        yaml.safe_dump(plan, f, sort_keys=False)
    return path


def _registry_artifact(url: str) -> str:
    url = url.strip()
    if url.startswith(ARTIFACT_PREFIXES):
        return url
    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            url = url[len(scheme):]
    return f"registry:{url}"


def build_invocation(request: ScanRequest, config: HubConfig) -> ScanInvocation:
    """Derive the argument list and environment for one scan."""
    command = shlex.split(config.scanner_command)
    region = request.region or config.scanner_region
    env = dict(os.environ)
    if request.api_key:
        env[SCANNER_KEY_ENV] = request.api_key

    if request.scan_type == "file":
        path = os.path.abspath(os.path.expanduser(request.target))
        if not os.path.exists(path):
            raise ScanRequestError(f"File not found: {request.target}")
        artifact = f"dir:{path}" if os.path.isdir(path) else f"file:{path}"
        return ScanInvocation(args=command + ["scan", artifact, "-V", "-M", "--region", region], env=env)

    if request.scan_type == "url":
        if not request.target.strip():
            raise ScanRequestError("A URL is required for URL scans")
        artifact = _registry_artifact(request.target)
        return ScanInvocation(args=command + ["scan", artifact, "-V", "-M", "--region", region], env=env)

    if request.llm is None:
        raise ScanRequestError("LLM endpoint scans need an 'llm' target configuration")
    if request.llm.api_key:
        env[TARGET_KEY_ENV] = request.llm.api_key
    plan_path = write_attack_plan(build_attack_plan(request))
    args = command + ["aiscan", "llm", "--config", plan_path, "--region", region, "--output", "json"]
    return ScanInvocation(args=args, env=env, temp_files=[plan_path])


async def run_scanner(args: List[str], env: Dict[str, str], timeout: float) -> Tuple[int, str, str]:
    """Run the scanner to completion. Returns (returncode, stdout, stderr)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        raise ScanSubprocessFailure(f"Scanner could not be started: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ScanSubprocessFailure(f"Scanner timed out after {timeout:.0f}s")
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def raw_report_from_output(stdout: str) -> Any:
    """Keep JSON output as-is; wrap anything else so the extractor can read it as text."""
    text = stdout.strip()
    try:
        data = json.loads(text)
    except ValueError:
        return {"output": stdout}
    return data if isinstance(data, dict) else {"output": stdout}


def _remove_temp_files(paths: List[str]) -> None:
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary scan file {path}: {e}")


async def run_scan(
    request: ScanRequest,
    history: Optional[ScanHistoryStore] = None,
    config: Optional[HubConfig] = None,
) -> ScanRecord:
    """Run one scan and record it. Raises ScanRequestError, ScanSubprocessFailure or PersistenceFailure."""
    if config is None:
        config = get_config()
    if history is None:
        history = get_scan_history()

    invocation = build_invocation(request, config)
    start_time = time.time()
    try:
        returncode, stdout, stderr = await run_scanner(invocation.args, invocation.env, config.scan_timeout_seconds)
    finally:
        _remove_temp_files(invocation.temp_files)
    duration = round(time.time() - start_time, 2)

    if returncode != 0 and not stdout.strip():
        raise ScanSubprocessFailure(stderr.strip() or f"Scanner exited with code {returncode}", returncode)
    if returncode != 0:
        logger.warning(f"Scanner exited with code {returncode}; using its output anyway")

    raw_report = raw_report_from_output(stdout)
    assessment = extract(raw_report)
    record = ScanRecord(
        id=str(uuid.uuid4()),
        target_name=target_name(request),
        scan_type=request.scan_type,
        scan_date=datetime.now(timezone.utc).isoformat(),
        duration_seconds=duration,
        threat_level=assessment.threat_level,
        risk_score=assessment.risk_score,
        malware_detected=assessment.malware_detected,
        findings=assessment.findings,
        raw_report=raw_report,
        extractor_version=EXTRACTOR_VERSION,
    )
    await asyncio.to_thread(history.add, record)

    logger.info(
        f"Scan {record.id} type={record.scan_type} target={record.target_name} "
        f"threat={record.threat_level} risk={record.risk_score} findings={len(record.findings)} "
        f"duration={duration}s"
    )
    return record
