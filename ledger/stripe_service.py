import logging

import stripe

from ledger.config import currency, stripe_secret_key, stripe_webhook_secret

logger = logging.getLogger(__name__)


def _configure():
    stripe.api_key = stripe_secret_key() or None


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, stripe_webhook_secret())


def create_transfer(amount: int, destination: str, transfer_group: str, idempotency_key: str, metadata=None):
    _configure()
    return stripe.Transfer.create(
        amount=amount,
        currency=currency(),
        destination=destination,
        transfer_group=transfer_group,
        metadata=metadata or {},
        idempotency_key=idempotency_key
    )


class StripeTransferDispatcher:
    """Moves payout money to a connected account through Stripe Transfers."""

    def dispatch(self, payout, destination: str) -> str:
        transfer = create_transfer(
            amount=int(payout.amount),
            destination=destination,
            transfer_group=f"order_{payout.transaction.order_id}",
            idempotency_key=f"payout_{payout.id}",
            metadata={"payoutId": payout.id, "transactionId": payout.transaction_id},
        )
        logger.info("transfer %s created for payout %s", transfer.id, payout.id)
        return transfer.id


def get_dispatcher():
    if not stripe_secret_key():
        return None
    return StripeTransferDispatcher()
