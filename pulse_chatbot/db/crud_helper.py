from pulse_chatbot.db import CRUDCapability
from pulse_chatbot.models.chat import Conversation, Message, Setting


class ConversationCRUD(CRUDCapability[Conversation]):
    resource_db = Conversation


class MessageCRUD(CRUDCapability[Message]):
    resource_db = Message


class SettingCRUD(CRUDCapability[Setting]):
    resource_db = Setting
