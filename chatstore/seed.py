"""
Sample data for demo and test environments.

Seeding goes through the normal write API, so seeded data obeys the same
invariants and produces the same notifications as user activity.
"""

import logging

from chatstore.schemas import Conversation, Sender

logger = logging.getLogger(__name__)

SAMPLE_CONVERSATIONS = (
    ("Alice Johnson", ("Hey, how are you?", "I'm doing great, thanks!", "Want to grab lunch tomorrow?")),
    ("Bob Smith", ("Did you finish the project?", "Almost done, just fixing tests.", "Nice work!")),
    ("Charlie Brown", ("Happy birthday! 🎂", "Thank you so much! 🥳")),
    ("Diana Ross", ("The meeting is at 3pm", "Got it, I'll be there.", "Don't forget the slides!")),
    ("Eve Martinez", ("Check out this new app", "Looks amazing!", "Let's discuss later")),
)


def seed_sample_data(store, samples=SAMPLE_CONVERSATIONS) -> list[Conversation]:
    """
    Create the sample conversations, alternating sender on each message.

    Conversations are created in reverse so the first sample ends up on top
    of the list.

    Returns:
        The seeded conversations as stored after seeding
    """
    created = []
    for contact_name, texts in reversed(samples):
        conversation = store.create_conversation(contact_name)
        for index, text in enumerate(texts):
            sender = Sender.SELF if index % 2 == 0 else Sender.COUNTERPART
            store.send_message(text, conversation.id, sender=sender)
        created.append(conversation.id)
    logger.info(f"Seeded {len(created)} sample conversations")
    return [store.get_conversation(conversation_id) for conversation_id in reversed(created)]
