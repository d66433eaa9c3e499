#!/usr/bin/env python3
"""
VeilKYC CLI

Command-line interface for the verification pipeline.

Usage:
    veilkyc <command> [subcommand] [options]

Commands:
    prove       Generate age, document or full KYC proofs
    verify      Verify a proof file against its circuit
    run         Run the full pipeline for one identity record
    worker      Confidential worker entrypoint (reads IEXEC_* environment)
    keygen      Generate an enclave signing key (Ed25519 JWK)
    network     Show the network profile for a chain ID
    status      Look up a subject's on-chain verification status
    config      Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from veilkyc import __version__
from veilkyc.config import ConfigManager, get_config_manager
from veilkyc.errors import VeilKycError


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def load_document(path: str) -> Any:
    """Read a JSON or YAML file."""
    p = Path(path)
    if not p.exists():
        raise CLIError(f"File not found: {p}")
    try:
        return yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise CLIError(f"Cannot parse {p}: {e}") from e


class VeilKycCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="veilkyc",
            description="Privacy-preserving KYC verification pipeline",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"veilkyc {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file (YAML)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_prove_commands()
        self._register_pipeline_commands()
        self._register_enclave_commands()
        self._register_config_commands()

    def _register_prove_commands(self) -> None:
        prove = self.subparsers.add_parser("prove", help="Generate proofs")
        prove_sub = prove.add_subparsers(dest="subcommand")

        # prove age
        age = prove_sub.add_parser("age", help="Prove minimum age")
        age.add_argument("--dob", required=True, help="Date of birth (YYYY-MM-DD)")
        age.add_argument("--minimum-age", type=int, help="Minimum age (default: config)")
        age.add_argument("--subject", "-s", required=True, help="Subject address")

        # prove document
        document = prove_sub.add_parser("document", help="Prove document validity")
        document.add_argument("--expiry", required=True, help="Expiry date (YYYY-MM-DD)")
        document.add_argument("--type", "-t", dest="document_type", default="passport", help="Document type")
        document.add_argument("--subject", "-s", required=True, help="Subject address")

        # prove kyc
        kyc = prove_sub.add_parser("kyc", help="Full KYC proof from an identity record")
        kyc.add_argument("record", help="Identity record file (JSON or YAML)")
        kyc.add_argument("--subject", "-s", required=True, help="Subject address")

        # verify
        verify = self.subparsers.add_parser("verify", help="Verify a proof file")
        verify.add_argument("proof", help="Proof file (JSON)")
        verify.add_argument("--circuit", default="full_kyc", help="Circuit type (default: full_kyc)")

    def _register_pipeline_commands(self) -> None:
        run = self.subparsers.add_parser("run", help="Run the full verification pipeline")
        run.add_argument("record", help="Identity record file (JSON or YAML)")
        run.add_argument("--subject", "-s", required=True, help="Subject address")
        run.add_argument("--chain-id", type=int, help="Connected chain ID (default: config)")

        self.subparsers.add_parser("worker", help="Run the confidential worker from the environment")

        status = self.subparsers.add_parser("status", help="On-chain verification status")
        status.add_argument("subject", help="Subject address")
        status.add_argument("--chain-id", type=int, help="Chain ID (default: config)")

        network = self.subparsers.add_parser("network", help="Network profile for a chain ID")
        network.add_argument("chain_id", type=int, help="Chain ID")

    def _register_enclave_commands(self) -> None:
        keygen = self.subparsers.add_parser("keygen", help="Generate an enclave signing key")
        keygen.add_argument("--output", "-o", help="Write the private JWK to this file")
        keygen.add_argument("--kid", default="enclave-1", help="Key ID")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., verification.minimum_age)")

        # config set
        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            self._load_config(parsed)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except VeilKycError as e:
            if not parsed.quiet:
                print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
            return 1

    def _load_config(self, args: argparse.Namespace) -> ConfigManager:
        mgr = get_config_manager()
        mgr.load_defaults()
        if args.config:
            mgr.load_from_file(args.config)
        return mgr

    def _log_context(self):
        from veilkyc.observability import LogContext
        return LogContext.from_config(get_config_manager().config, stream=sys.stderr)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Proof handlers
    def _generator(self):
        from veilkyc.proofs import ProofGenerator
        from veilkyc.zkp import SealedCommitmentBackend, create_standard_registry

        mgr = get_config_manager()
        seed = mgr.get("proof.backend_seed") or None
        backend = SealedCommitmentBackend(create_standard_registry(seed))
        return ProofGenerator(
            backend=backend,
            log_context=self._log_context(),
            min_validity_days=mgr.get("verification.min_validity_days"),
        )

    def _handle_prove_age(self, args: argparse.Namespace) -> Any:
        minimum_age = args.minimum_age
        if minimum_age is None:
            minimum_age = get_config_manager().get("verification.minimum_age")
        return self._generator().prove_age(args.dob, minimum_age, args.subject).to_dict()

    def _handle_prove_document(self, args: argparse.Namespace) -> Any:
        return self._generator().prove_document_validity(args.expiry, args.document_type, args.subject).to_dict()

    def _handle_prove_kyc(self, args: argparse.Namespace) -> Any:
        from veilkyc.models import IdentityRecord

        generator = self._generator()
        mgr = get_config_manager()
        record = IdentityRecord.from_dict(load_document(args.record), today=generator.today())
        proof = generator.prove_full_kyc(
            record,
            args.subject,
            minimum_age=mgr.get("verification.minimum_age"),
            allowed_nationalities=mgr.get("verification.allowed_nationalities") or None,
        )
        return proof.to_dict()

    def _handle_verify(self, args: argparse.Namespace) -> Any:
        from veilkyc.verifier import ProofVerifier
        from veilkyc.zkp import SealedCommitmentBackend, create_standard_registry

        seed = get_config_manager().get("proof.backend_seed")
        if not seed:
            raise CLIError("proof.backend_seed must be set to verify proofs from another run")
        proof = load_document(args.proof)
        if not isinstance(proof, dict):
            raise CLIError("Proof file must contain a JSON object")
        registry = create_standard_registry(seed)
        verifier = ProofVerifier(SealedCommitmentBackend(registry), registry, self._log_context())
        return verifier.verify(proof, args.circuit).to_dict()

    # Pipeline handlers
    def _handle_run(self, args: argparse.Namespace) -> Any:
        from veilkyc.confidential import LocalEnclaveBackend
        from veilkyc.ledger import InMemoryLedger, LedgerSubmitter
        from veilkyc.orchestrator import VerificationOrchestrator, build_strategy, load_enclave_signer
        from veilkyc.proofs import ProofGenerator
        from veilkyc.verifier import ProofVerifier
        from veilkyc.zkp import SealedCommitmentBackend, create_standard_registry

        mgr = get_config_manager()
        config = mgr.config
        log_context = self._log_context()
        identity = load_document(args.record)
        if not isinstance(identity, dict):
            raise CLIError("Identity record must be a mapping")

        signer = load_enclave_signer(config, log_context)
        registry = create_standard_registry(config.proof.backend_seed.get() or None)
        proving_backend = SealedCommitmentBackend(registry)
        ledger = InMemoryLedger(trusted_enclave=signer.did, owner=args.subject)

        orchestrator = VerificationOrchestrator(
            subject=args.subject,
            strategy=build_strategy(
                config,
                backend=LocalEnclaveBackend(signer=signer, log_context=log_context),
                signer=signer,
                log_context=log_context,
            ),
            generator=ProofGenerator(
                proving_backend,
                registry,
                log_context=log_context,
                min_validity_days=config.verification.min_validity_days.get(),
            ),
            verifier=ProofVerifier(proving_backend, registry, log_context),
            submitter=LedgerSubmitter(
                ledger,
                validity_seconds=config.ledger.validity_seconds.get(),
                log_context=log_context,
            ),
            chain_id=args.chain_id if args.chain_id is not None else config.network.chain_id.get(),
            required_chain_id=config.network.required_chain_id.get(),
            minimum_age=config.verification.minimum_age.get(),
            allowed_nationalities=config.verification.allowed_nationalities.get(),
            trusted_signer=signer.did,
            log_context=log_context,
        )
        asyncio.run(orchestrator.start_verification(identity))
        result = orchestrator.to_dict()
        result["onChain"] = ledger.get_verification(args.subject).to_dict()
        return result

    def _handle_worker(self, args: argparse.Namespace) -> Any:
        from veilkyc.worker import run_worker
        return run_worker(dict(os.environ), log_context=self._log_context())

    def _handle_status(self, args: argparse.Namespace) -> Any:
        from veilkyc.confidential import fetch_verification_status, get_network_profile

        log_context = self._log_context()
        chain_id = args.chain_id if args.chain_id is not None else get_config_manager().get("network.chain_id")
        profile = get_network_profile(chain_id)
        verified = fetch_verification_status(args.subject, profile, log_context=log_context)
        return {"subject": args.subject.lower(), "network": profile.name, "verified": verified}

    def _handle_network(self, args: argparse.Namespace) -> Any:
        from veilkyc.confidential import NETWORK_PROFILES, get_network_profile
        profile = get_network_profile(args.chain_id)
        d = profile.to_dict()
        d["recognized"] = args.chain_id in NETWORK_PROFILES
        return d

    # Enclave handlers
    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        from veilkyc.enclave import EnclaveSigner

        signer = EnclaveSigner.generate()
        if args.output:
            out = Path(args.output)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(json.dumps(signer.to_jwk(args.kid), indent=2), encoding="utf-8")
            os.chmod(out, 0o600)
            return {"did": signer.did, "path": str(out), "public_jwk": signer.public_jwk(args.kid)}
        return {"did": signer.did, "private_jwk": signer.to_jwk(args.kid)}

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        mgr.set(args.path, args.value)
        return {"path": args.path, "value": mgr.get(args.path), "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        errors = mgr.validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return mgr.export_schema()


def main() -> int:
    """CLI entry point."""
    cli = VeilKycCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
