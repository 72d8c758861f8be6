import logging
from typing import Callable, List

from errors import ValidationError
from protocol import ContactInfoEnvelope, Envelope
from storage import STATUS_ONLINE, Contact

logger = logging.getLogger(__name__)


class ContactHandshake:
    """
    First-contact identity exchange.

    Whoever opened a channel announces itself with a contact-info envelope
    once the channel is open. The receiver validates it and auto-adds the
    sender as a contact the first time it is seen.
    """
    def __init__(self, manager, identity, contact_store, notifier):
        self.manager = manager
        self.identity = identity
        self.contact_store = contact_store
        self.notifier = notifier
        self._observers: List[Callable[[], None]] = []

        manager.add_global_handler(self.handle_envelope)
        manager.on_channel_open(self.on_channel_open)

    def add_contacts_changed_observer(self, observer: Callable[[], None]):
        self._observers.append(observer)

    def on_channel_open(self, peer_id: str, outbound: bool):
        if not outbound:
            return
        envelope = ContactInfoEnvelope(display_name=self.identity.display_name, peer_id=self.identity.peer_id)
        if self.manager.send_message(peer_id, envelope):
            logger.debug(f"Sent contact info to {peer_id}")
        else:
            logger.warning(f"Could not send contact info to {peer_id}")

    def handle_envelope(self, peer_id: str, envelope: Envelope):
        if not isinstance(envelope, ContactInfoEnvelope):
            return
        try:
            display_name = self.validate(peer_id, envelope)
        except ValidationError as e:
            logger.debug(f"Contact info from {peer_id} rejected: {e}")
            return
        self._add_contact(peer_id, display_name)

    def validate(self, peer_id: str, envelope: ContactInfoEnvelope) -> str:
        """
        Checks a contact-info envelope received on a channel from peer_id.
        Returns the trimmed display name; raises ValidationError otherwise.
        """
        local_id = self.identity.peer_id
        if peer_id == local_id or envelope.peer_id == local_id:
            raise ValidationError("contact info describes the local identity")
        if envelope.peer_id is not None and envelope.peer_id != peer_id:
            raise ValidationError(f"claimed peer id {envelope.peer_id!r} does not match channel peer {peer_id!r}")
        name = envelope.display_name
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("empty display name")
        return name.strip()

    def _add_contact(self, peer_id: str, display_name: str):
        if self.contact_store.get_by_peer_id(peer_id) is not None:
            return

        contact = self.contact_store.upsert(Contact(peer_id=peer_id, display_name=display_name, status=STATUS_ONLINE))
        logger.info(f"Added {display_name} ({peer_id}) to contacts")
        self.notifier.notify("New contact added", f"{contact.display_name} has been added to your contacts")

        for observer in list(self._observers):
            try:
                observer()
            except Exception:
                logger.exception("Contacts changed observer failed")
