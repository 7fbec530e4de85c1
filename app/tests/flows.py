from decimal import Decimal

from app.core.shipment_states import ShipmentStatus
from app.models.enums import ParticipantRole
from app.services.escrow_coordinator import Splits

S = ShipmentStatus

SPLITS = Splits(farmer_bps=8000, transporter_bps=1500, platform_bps=500)
ASK = Decimal("12.5")
ASK_UNITS = 12_500_000  # 6 token decimals
TOKEN = "0x" + "00" * 18 + "a612"

# test wallets; F2 is registered without KYC
KEYS = {
    "F1": ("0x" + "11" * 32, ParticipantRole.FARMER),
    "I1": ("0x" + "22" * 32, ParticipantRole.INDUSTRY),
    "T1": ("0x" + "33" * 32, ParticipantRole.TRANSPORTER),
    "T2": ("0x" + "44" * 32, ParticipantRole.TRANSPORTER),
    "O1": ("0x" + "55" * 32, ParticipantRole.ORACLE),
    "R1": ("0x" + "66" * 32, ParticipantRole.RESOLVER),
    "A1": ("0x" + "77" * 32, ParticipantRole.ADMIN),
    "F2": ("0x" + "88" * 32, ParticipantRole.FARMER),
}

ORDER = [
    S.PENDING,
    S.OFFER_MADE,
    S.AWAITING_PAYMENT,
    S.READY_FOR_PICKUP,
    S.IN_TRANSIT,
    S.DELIVERED,
    S.VERIFIED,
    S.CLAIMED,
]


class ShipmentFlows:
    """Drives one shipment F1 -> I1 -> T1 along the main line, settling as it goes."""

    def __init__(self, db, services, ledger, people):
        self.db = db
        self.services = services
        self.ledger = ledger
        self.people = people

    def sweep(self):
        return self.services.tracker.sweep(self.db)

    def create(self, shipment_id="SHP-1", farmer="F1"):
        self.services.shipments.create_shipment(
            self.db, principal=self.people[farmer], ask_price=ASK, metadata_hash="ipfs://meta-1",
            shipment_id=shipment_id,
        )
        self.sweep()
        return shipment_id

    def offer(self, shipment_id):
        self.services.shipments.make_offer(self.db, principal=self.people["I1"], shipment_id=shipment_id)
        self.sweep()

    def assign(self, shipment_id, carrier="T1"):
        for side in ("F1", "I1"):
            self.services.shipments.nominate_carrier(
                self.db, principal=self.people[side], shipment_id=shipment_id, carrier_id=carrier
            )
        self.sweep()

    def fund(self, shipment_id):
        outcome = self.services.escrow.deposit(
            self.db, principal=self.people["I1"], shipment_id=shipment_id, amount=ASK_UNITS, splits=SPLITS
        )
        # approve, then the deferred deposit
        self.sweep()
        self.sweep()
        return outcome

    def step(self, shipment_id, target, who):
        self.services.shipments.transition(
            self.db, principal=self.people[who], shipment_id=shipment_id, target=target
        )
        self.sweep()

    def drive_to(self, target: ShipmentStatus, shipment_id="SHP-1"):
        """Create a shipment and settle every step up to and including `target`."""
        self.create(shipment_id)
        steps = {
            S.OFFER_MADE: lambda: self.offer(shipment_id),
            S.AWAITING_PAYMENT: lambda: self.assign(shipment_id),
            S.READY_FOR_PICKUP: lambda: self.fund(shipment_id),
            S.IN_TRANSIT: lambda: self.step(shipment_id, S.IN_TRANSIT, "T1"),
            S.DELIVERED: lambda: self.step(shipment_id, S.DELIVERED, "T1"),
            S.VERIFIED: lambda: self.step(shipment_id, S.VERIFIED, "I1"),
            S.CLAIMED: lambda: self.step(shipment_id, S.CLAIMED, "F1"),
        }
        for status in ORDER[1:ORDER.index(target) + 1]:
            steps[status]()
        return self.services.shipments.get(self.db, shipment_id)
