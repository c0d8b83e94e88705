# flowsniper/custody.py
"""
Custody Manager - Owner / Operator Key Model

The owner holds the funds and signs rarely. The operator is a local hot key
that signs every trade. Before the operator is trusted the owner signs a
human-readable pairing message binding the two addresses; the owner then
approves the operator to pull trading funds with ERC-20 transferFrom.
"""

import json
import os
import time
from pathlib import Path
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from config.settings import Settings
from flowsniper.chain_client import erc20_approve_data, erc20_transfer_from_data
from flowsniper.decimal_utils import denormalize_amount
from flowsniper.exceptions import CustodyError, InsufficientAllowanceError
from flowsniper.types import Token, WalletIdentity
from flowsniper.utils.helpers import same_address, truncate_address
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

PAIRING_MESSAGE_TEMPLATE = (
    "FlowSniper operator authorization\n"
    "\n"
    "Owner: {owner}\n"
    "Operator: {operator}\n"
    "Chain ID: {chain_id}\n"
    "\n"
    "I authorize the operator address to trade on my behalf "
    "with the funds I approve for it."
)


class CustodyManager:
    """
    Owns the operator key material and the owner pairing.

    Features:
    - Operator key generated once, persisted in a 0600 JSON keystore
    - EIP-191 pairing signature verified by address recovery
    - Owner ERC-20 allowance delegation to the operator
    - Shortfall pulls from the owner bounded by the allowance
    - Signer resolution: exact match, paired operator, fallback key
    """

    def __init__(self, settings: Settings, chain, keystore_path: Optional[Path] = None):
        self.settings = settings
        self.chain = chain
        self.chain_id = settings.network.chain_id
        self.keystore_path = Path(keystore_path) if keystore_path else settings.keystore_file()

        self.identity: Optional[WalletIdentity] = None
        self._operator: Optional[LocalAccount] = None
        self._fallback: Optional[LocalAccount] = None

        if settings.custody.private_key:
            self._fallback = Account.from_key(settings.custody.private_key)

        self.load()

    # Keystore

    def load(self) -> Optional[WalletIdentity]:
        """Load the persisted identity, if any."""
        if not self.keystore_path.exists():
            return None

        try:
            data = json.loads(self.keystore_path.read_text(encoding="utf-8"))
            account = Account.from_key(data["operator_private_key"])
        except (OSError, ValueError, KeyError) as e:
            raise CustodyError(f"Unreadable operator keystore {self.keystore_path}: {e}") from e

        if not same_address(account.address, data.get("operator_address", account.address)):
            raise CustodyError("Operator keystore address does not match its key")

        self._operator = account
        self.identity = WalletIdentity(
            operator_address=account.address,
            operator_private_key=data["operator_private_key"],
            owner_address=data.get("owner_address"),
            pairing_signature=data.get("pairing_signature"),
            allowance_granted=bool(data.get("allowance_granted", False)),
        )

        # A stored pairing must still verify
        if self.identity.is_paired and not self.verify_pairing(self.identity.owner_address,
                                                                self.identity.pairing_signature):
            logger.warning("Stored pairing signature does not verify; operator left unpaired")
            self.identity.owner_address = None
            self.identity.pairing_signature = None

        logger.info(f"🔑 Operator loaded: {truncate_address(account.address)}"
                    f"{' (paired)' if self.identity.is_paired else ' (unpaired)'}")
        return self.identity

    def _persist(self):
        identity = self.identity
        payload = {
            "operator_address": identity.operator_address,
            "operator_private_key": identity.operator_private_key,
            "owner_address": identity.owner_address,
            "pairing_signature": identity.pairing_signature,
            "allowance_granted": identity.allowance_granted,
            "updated_at": int(time.time()),
        }

        self.keystore_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.keystore_path.with_suffix(".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.keystore_path)

    def ensure_operator(self) -> WalletIdentity:
        """Return the operator identity, generating and persisting a key on first use."""
        if self.identity is not None:
            return self.identity

        account = Account.create()
        self._operator = account
        self.identity = WalletIdentity(
            operator_address=account.address,
            operator_private_key=account.key.hex(),
        )
        self._persist()
        logger.info(f"🔑 New operator generated: {account.address}")
        return self.identity

    # Pairing

    def pairing_message(self, owner_address: str) -> str:
        identity = self.ensure_operator()
        return PAIRING_MESSAGE_TEMPLATE.format(
            owner=owner_address, operator=identity.operator_address, chain_id=self.chain_id
        )

    def verify_pairing(self, owner_address: str, signature: str) -> bool:
        """True when ``signature`` is the owner's signature over the pairing message."""
        message = encode_defunct(text=self.pairing_message(owner_address))
        try:
            recovered = Account.recover_message(message, signature=signature)
        except Exception as e:
            logger.warning(f"Pairing signature recovery failed: {e}")
            return False
        return same_address(recovered, owner_address)

    def register_pairing(self, owner_address: str, signature: str) -> WalletIdentity:
        """Store a pairing signature produced by an external owner wallet."""
        identity = self.ensure_operator()

        if same_address(owner_address, identity.operator_address):
            raise CustodyError("Owner and operator must be different addresses")

        if not self.verify_pairing(owner_address, signature):
            raise CustodyError("Pairing signature does not match the owner address")

        identity.owner_address = owner_address
        identity.pairing_signature = signature
        identity.allowance_granted = False
        self._persist()
        logger.info(f"🤝 Operator {truncate_address(identity.operator_address)} paired with owner "
                    f"{truncate_address(owner_address)}")
        return identity

    def pair(self, owner_signer: LocalAccount) -> str:
        """Have a local owner key sign the pairing message; returns the signature."""
        message = encode_defunct(text=self.pairing_message(owner_signer.address))
        signed = owner_signer.sign_message(message)
        signature = "0x" + bytes(signed.signature).hex()
        self.register_pairing(owner_signer.address, signature)
        return signature

    @property
    def is_paired(self) -> bool:
        return self.identity is not None and self.identity.is_paired

    @property
    def operator_address(self) -> Optional[str]:
        return self.identity.operator_address if self.identity else None

    @property
    def owner_address(self) -> Optional[str]:
        if self.identity and self.identity.is_paired:
            return self.identity.owner_address
        return self.settings.custody.owner_address

    # Allowance delegation

    async def grant_allowance(self, owner_signer: LocalAccount, token: Token, amount) -> str:
        """
        Submit the owner's approve(operator, amount) for ``token``.

        Args:
            owner_signer: The paired owner's key
            token: Trading token
            amount: Allowance in human units

        Returns:
            Transaction hash
        """
        if not self.is_paired:
            raise CustodyError("Operator must be paired before an allowance is granted")
        if not same_address(owner_signer.address, self.identity.owner_address):
            raise CustodyError("Allowance must be granted by the paired owner")

        raw_amount = denormalize_amount(amount, token.decimals)
        tx_hash = await self.chain.send_transaction(
            owner_signer, token.address, erc20_approve_data(self.identity.operator_address, raw_amount)
        )
        await self.chain.wait_for_receipt(tx_hash)

        self.identity.allowance_granted = True
        self._persist()
        logger.info(f"✅ Owner approved {amount} {token.symbol} for operator | {tx_hash}")
        return tx_hash

    async def ensure_funds(self, token: Token, amount: int, signer: Optional[LocalAccount] = None) -> int:
        """
        Make sure the trading signer holds ``amount`` base units of ``token``.

        A paired operator pulls any shortfall from the owner with
        transferFrom; other signers must already hold the funds.

        Returns:
            Base units pulled from the owner (0 when none were needed)

        Raises:
            InsufficientAllowanceError: operator balance plus owner allowance
                (or owner balance) cannot cover ``amount``
        """
        signer = signer or self.resolve_signer()
        balance = await self.chain.token_balance(token.address, signer.address)
        if balance >= amount:
            return 0

        shortfall = amount - balance
        is_operator = self.is_paired and same_address(signer.address, self.identity.operator_address)
        if not is_operator:
            raise InsufficientAllowanceError(
                f"{truncate_address(signer.address)} holds {balance} of {amount} {token.symbol} base units",
                token=token.symbol, available=balance, required=amount,
            )

        owner = self.identity.owner_address
        allowance = await self.chain.allowance(token.address, owner, signer.address)
        if balance + allowance < amount:
            raise InsufficientAllowanceError(
                f"Operator balance {balance} + owner allowance {allowance} < {amount} {token.symbol} base units",
                token=token.symbol, available=balance + allowance, required=amount,
            )

        owner_balance = await self.chain.token_balance(token.address, owner)
        if owner_balance < shortfall:
            raise InsufficientAllowanceError(
                f"Owner holds {owner_balance} {token.symbol} base units, shortfall is {shortfall}",
                token=token.symbol, available=balance + owner_balance, required=amount,
            )

        tx_hash = await self.chain.send_transaction(
            signer, token.address, erc20_transfer_from_data(owner, signer.address, shortfall)
        )
        await self.chain.wait_for_receipt(tx_hash)
        logger.info(f"💸 Pulled {shortfall} {token.symbol} base units from owner | {tx_hash}")
        return shortfall

    # Signers

    def resolve_signer(self, preferred_address: Optional[str] = None) -> LocalAccount:
        """
        Pick the account that signs the next transaction.

        Order: exact address match among trusted signers, then the paired
        operator, then the fallback single-key wallet. An unpaired operator
        is never returned.

        Raises:
            CustodyError: no trusted signer is available
        """
        trusted = []
        if self._operator is not None and self.is_paired:
            trusted.append(self._operator)
        if self._fallback is not None:
            trusted.append(self._fallback)

        if preferred_address:
            for account in trusted:
                if same_address(account.address, preferred_address):
                    return account

        if trusted:
            return trusted[0]

        raise CustodyError("No trusted signer: pair the operator or configure PRIVATE_KEY")

    def has_signer(self) -> bool:
        return (self._operator is not None and self.is_paired) or self._fallback is not None
