# flowsniper/consolidation.py
"""
Consolidation Service - sweeps trading proceeds from the operator to the owner
"""

from decimal import Decimal
from typing import Optional

from flowsniper.decimal_utils import normalize_amount
from flowsniper.risk_manager import classify_error
from flowsniper.types import FlowOperation, FlowStep, StepStatus, Token
from flowsniper.utils.helpers import same_address, truncate_address
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)


class ConsolidationService:
    """Moves the operator's full proceeds balance to the owner once it crosses a threshold."""

    def __init__(self, chain, custody, executor, journal=None):
        self.chain = chain
        self.custody = custody
        self.executor = executor
        self.journal = journal

    async def consolidate(self, token: Token, threshold: Decimal) -> Optional[FlowStep]:
        """
        Sweep ``token`` to the owner when the signer holds at least ``threshold``.

        Best effort: failures are logged and journaled, never raised.

        Returns:
            The FlowStep recorded, or None when nothing was due
        """
        pair = f"{token.symbol} -> OWNER"
        try:
            signer = self.custody.resolve_signer()
            owner = self.custody.owner_address
            if not owner or same_address(owner, signer.address):
                logger.debug("No distinct owner address; proceeds stay with the signer")
                return None

            raw_balance = await self.chain.token_balance(token.address, signer.address)
            balance = normalize_amount(raw_balance, token.decimals)
            if raw_balance <= 0 or balance < threshold:
                return None

            logger.info(f"🏦 Consolidating {balance} {token.symbol} to {truncate_address(owner)}")
            tx_hash = await self.executor.transfer(token, owner, raw_balance, signer=signer, wait=True)
            step = FlowStep(
                operation=FlowOperation.ASSET_CONSOLIDATION,
                pair=pair,
                profit=Decimal(0),
                status=StepStatus.SUCCESS,
                tx_hash=tx_hash,
                detail=f"{balance} {token.symbol}",
            )
        except Exception as e:
            logger.error(f"Consolidation failed: {e}")
            step = FlowStep(
                operation=FlowOperation.ASSET_CONSOLIDATION,
                pair=pair,
                profit=Decimal(0),
                status=StepStatus.FAILED,
                detail=f"{classify_error(e).value}: {e}",
            )

        if self.journal is not None:
            self.journal.record(step)
        return step
