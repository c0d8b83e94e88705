# Operator setup
# scripts/setup_operator.py

"""
Operator Setup Script
Creates the operator hot key, pairs it with the owner wallet and optionally
grants the trading allowance.

Usage:
    python scripts/setup_operator.py                          # create operator, show status
    python scripts/setup_operator.py --owner 0xOWNER          # print the message to sign
    python scripts/setup_operator.py --owner 0xOWNER --signature 0xSIG
    python scripts/setup_operator.py --owner-key 0xKEY --allowance 100
"""

import argparse
import asyncio
import os
import sys
from decimal import Decimal
from pathlib import Path

import requests
from eth_account import Account

# Setup paths
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from config.settings import load_settings
from flowsniper.chain_client import ChainClient
from flowsniper.custody import CustodyManager
from flowsniper.decimal_utils import TokenRegistry
from flowsniper.exceptions import FlowSniperError
from flowsniper.utils.logger import get_logger

logger = get_logger("setup_operator")


def check_rpc(rpc_url: str, expected_chain_id: int, timeout: float = 10.0) -> bool:
    """Ask the RPC node for its chain id."""
    try:
        response = requests.post(
            rpc_url,
            json={"jsonrpc": "2.0", "method": "eth_chainId", "params": [], "id": 1},
            timeout=timeout,
        )
        response.raise_for_status()
        chain_id = int(response.json()["result"], 16)
    except (requests.RequestException, KeyError, ValueError) as e:
        logger.error(f"❌ RPC check failed for {rpc_url}: {e}")
        return False

    if chain_id != expected_chain_id:
        logger.error(f"❌ RPC reports chain {chain_id}, expected {expected_chain_id}")
        return False

    logger.info(f"✅ RPC reachable (chain {chain_id})")
    return True


def parse_args():
    parser = argparse.ArgumentParser(description="FlowSniper operator setup")
    parser.add_argument("--owner", help="Owner wallet address")
    parser.add_argument("--signature", help="Owner signature over the pairing message")
    parser.add_argument("--owner-key", default=os.getenv("OWNER_PRIVATE_KEY"),
                        help="Owner private key for local signing (default: OWNER_PRIVATE_KEY)")
    parser.add_argument("--allowance", type=Decimal,
                        help="USDT amount the operator may pull from the owner (needs the owner key)")
    parser.add_argument("--skip-rpc-check", action="store_true", help="Do not contact the RPC node")
    return parser.parse_args()


def main():
    """Main setup function"""
    args = parse_args()

    try:
        settings = load_settings()

        if not args.skip_rpc_check and not check_rpc(settings.network.rpc_url, settings.network.chain_id):
            sys.exit(1)

        chain = ChainClient(settings)
        custody = CustodyManager(settings, chain)
        identity = custody.ensure_operator()
        logger.info(f"🔑 Operator address: {identity.operator_address}")
        logger.info(f"📁 Keystore: {custody.keystore_path}")

        owner_signer = Account.from_key(args.owner_key) if args.owner_key else None

        if args.owner and args.signature:
            custody.register_pairing(args.owner, args.signature)
        elif owner_signer is not None and not custody.is_paired:
            custody.pair(owner_signer)
        elif args.owner and not custody.is_paired:
            print("\nSign this message with the owner wallet (personal_sign), then rerun with --signature:\n")
            print(custody.pairing_message(args.owner))
            print()
            return

        if custody.is_paired:
            logger.info(f"🤝 Paired with owner {custody.owner_address}")
        else:
            logger.warning("⚠️ Operator is not paired; it will not sign trades")

        if args.allowance is not None:
            if owner_signer is None:
                logger.error("❌ --allowance requires the owner key")
                sys.exit(1)
            usdt = TokenRegistry(chain).quote_token()
            tx_hash = asyncio.run(custody.grant_allowance(owner_signer, usdt, args.allowance))
            logger.info(f"✅ Allowance of {args.allowance} {usdt.symbol} granted | {tx_hash}")

    except KeyboardInterrupt:
        print("\nSetup cancelled by user")
        sys.exit(1)
    except (FlowSniperError, ValueError) as e:
        logger.error(f"❌ Setup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
