#!/usr/bin/env python3
"""
Seal Relayer CLI

Usage:
    sealrelay run [--config FILE] [--simulate] [--demo-seals N] [--once]
    sealrelay seal-hash --source-chain ID --contract HEX --token-id ID --pubkey HEX --nonce N
    sealrelay decode-envelope <hex | base64 | @file>
    sealrelay status <seal_hash> [--config FILE]
    sealrelay stats [--config FILE]
    sealrelay failures [--config FILE] [--limit N]
"""

import asyncio
import base64
import binascii
import json
import signal
from pathlib import Path
from typing import Optional

import click

from ..config import RelayerConfig, load_config
from ..constants import RELAYER_VERSION
from ..exceptions import ConfigurationError, MalformedPayload, MalformedSealBytes
from ..logger import configure_logging, get_logger
from ..protocol import (
    SealFields,
    compute_seal_hash,
    decode_deposit_payload,
    decode_envelope,
    encode_seal_bytes,
    encode_token_id,
)
from ..store import open_store

logger = get_logger(__name__)


def _load(config_path: Optional[str]) -> RelayerConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _hex(value: str, name: str) -> bytes:
    try:
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    except ValueError:
        raise click.BadParameter(f"{name} must be hex")


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=False))


@click.group()
@click.version_option(version=RELAYER_VERSION, prog_name="sealrelay")
def cli():
    """Seal relayer: carries sealed assets to their reborn twins."""


# ══════════════════════════════════════════════════════════════════════
#  RUN
# ══════════════════════════════════════════════════════════════════════

async def _run(config: RelayerConfig, demo_seals: int, once: bool) -> int:
    from ..engine import create_engine
    from ..health import serve_health

    engine = await create_engine(config)

    if demo_seals:
        from ..ledgers.memory import demo_fields

        for index in range(1, demo_seals + 1):
            engine.ledgers.source.seal(demo_fields(index, engine.ledgers.custody.attestation_pubkey))
        logger.info(f"Sealed {demo_seals} demo assets on the simulated source ledger")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.stop_event.set)
        except NotImplementedError:
            pass

    await engine.start(ingest=not once)
    health_task = None
    if config.health.enabled and not once:
        health_task = asyncio.create_task(serve_health(engine, config.health.host, config.health.port))

    try:
        if once:
            await engine.ingestor.poll_once()
            while engine.ingestor.has_more:
                await engine.ingestor.poll_once()
            await engine.drain()
        else:
            await engine.stop_event.wait()
    finally:
        await engine.stop()
        if health_task is not None:
            await health_task
        stats = await engine.stats()
        await engine.close()

    _echo_json(stats)
    return 0 if stats["items"].get("FAILED", 0) == 0 else 1


@cli.command("run")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--simulate", is_flag=True, help="Use in-memory ledgers")
@click.option("--demo-seals", type=int, default=0, help="Seal N demo assets first (simulate only)")
@click.option("--once", is_flag=True, help="Process what is pending, then exit")
def run_cmd(config_path: Optional[str], simulate: bool, demo_seals: int, once: bool):
    """Start the relayer engine.

    Examples:

        sealrelay run --config config.toml

        sealrelay run --simulate --demo-seals 5 --once
    """
    config = _load(config_path)
    if simulate:
        config.relayer.simulate = True
        config.store.backend = "memory" if config_path is None else config.store.backend
    if demo_seals and not config.relayer.simulate:
        raise click.BadParameter("--demo-seals requires --simulate")

    configure_logging(log_level=config.relayer.log_level)
    try:
        code = asyncio.run(_run(config, demo_seals, once))
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    raise SystemExit(code)


# ══════════════════════════════════════════════════════════════════════
#  CODEC TOOLS
# ══════════════════════════════════════════════════════════════════════

@cli.command("seal-hash")
@click.option("--source-chain", type=int, required=True, help="Source chain id (u16)")
@click.option("--contract", required=True, help="Source contract bytes, hex")
@click.option("--token-id", required=True, help="Token id in the source chain's notation")
@click.option("--raw-token-id", is_flag=True, help="Treat --token-id as raw hex bytes")
@click.option("--pubkey", required=True, help="32-byte attestation public key, hex")
@click.option("--nonce", type=int, required=True, help="Seal nonce (u64)")
def seal_hash_cmd(source_chain: int, contract: str, token_id: str, raw_token_id: bool, pubkey: str, nonce: int):
    """Compute the seal hash for a set of protocol fields."""
    try:
        token_bytes = _hex(token_id, "token-id") if raw_token_id else encode_token_id(token_id, source_chain)
        fields = SealFields(
            source_chain_id=source_chain,
            source_contract=_hex(contract, "contract"),
            token_id=token_bytes,
            attestation_pubkey=_hex(pubkey, "pubkey"),
            nonce=nonce,
        )
        encoded = encode_seal_bytes(fields)
    except (MalformedSealBytes, ValueError) as e:
        raise click.ClickException(str(e))

    _echo_json({
        "seal_hash": compute_seal_hash(fields).hex(),
        "encoded": encoded.hex(),
        "length": len(encoded),
        "fields": fields.to_dict(),
    })


def _read_envelope(value: str) -> bytes:
    if value.startswith("@"):
        path = Path(value[1:])
        raw = path.read_bytes()
        try:
            value = raw.decode("ascii").strip()
        except UnicodeDecodeError:
            return raw
    stripped = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        pass
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error:
        raise click.BadParameter("envelope must be hex, base64 or @file")


@cli.command("decode-envelope")
@click.argument("envelope")
def decode_envelope_cmd(envelope: str):
    """Decode a guardian envelope and its deposit payload."""
    data = _read_envelope(envelope)
    try:
        decoded = decode_envelope(data)
    except MalformedPayload as e:
        raise click.ClickException(f"Malformed envelope: {e}")

    result = {"envelope": decoded.to_dict()}
    try:
        result["deposit"] = decode_deposit_payload(decoded.payload).to_dict()
    except MalformedPayload as e:
        result["deposit_error"] = str(e)
    _echo_json(result)


# ══════════════════════════════════════════════════════════════════════
#  STORE QUERIES
# ══════════════════════════════════════════════════════════════════════

async def _with_store(config: RelayerConfig, query):
    store = await open_store(config.store.backend, config.store.path)
    try:
        return await query(store)
    finally:
        await store.close()


@cli.command("status")
@click.argument("seal_hash")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
def status_cmd(seal_hash: str, config_path: Optional[str]):
    """Show the work item for a seal hash."""
    key = _hex(seal_hash, "seal_hash")
    config = _load(config_path)
    item = asyncio.run(_with_store(config, lambda store: store.get_item(key)))
    if item is None:
        raise click.ClickException(f"Unknown seal hash {key.hex()}")
    _echo_json(item.to_dict())


@cli.command("stats")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
def stats_cmd(config_path: Optional[str]):
    """Show work item counts by status."""
    config = _load(config_path)
    _echo_json(asyncio.run(_with_store(config, lambda store: store.stats())))


@cli.command("failures")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--limit", "-n", type=int, default=20, help="Maximum entries")
def failures_cmd(config_path: Optional[str], limit: int):
    """List failed items and rejected events, newest first."""
    config = _load(config_path)
    failures = asyncio.run(_with_store(config, lambda store: store.list_failures(limit)))
    if not failures:
        click.echo(click.style("No failures recorded.", fg="green"))
        return
    for failure in failures:
        ident = failure.get("seal_hash") or failure.get("event_id", "?")
        click.echo(f"{click.style(failure['status'], fg='red')} {ident}")
        click.echo(f"    {failure['reason']}")


if __name__ == "__main__":
    cli()
