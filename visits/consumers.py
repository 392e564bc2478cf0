import json
import logging

from asgiref.sync import async_to_sync
from channels.generic.websocket import AsyncWebsocketConsumer
from channels.layers import get_channel_layer
from django.core.serializers.json import DjangoJSONEncoder

logger = logging.getLogger(__name__)

PRESENCE_GROUP = 'presence'


class PresenceConsumer(AsyncWebsocketConsumer):
    async def connect(self):
        self.room_group_name = PRESENCE_GROUP

        # Join room group
        await self.channel_layer.group_add(
            self.room_group_name,
            self.channel_name
        )

        await self.accept()

    async def disconnect(self, close_code):
        # Leave room group
        await self.channel_layer.group_discard(
            self.room_group_name,
            self.channel_name
        )

    async def presence_update(self, event):
        # Send message to WebSocket
        await self.send(text_data=json.dumps({
            'type': 'presence_update',
            'data': event['data']
        }, cls=DjangoJSONEncoder))


def broadcast_presence(payload):
    """Fan a presence change out to every connected dashboard; never raises"""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False
    try:
        async_to_sync(channel_layer.group_send)(PRESENCE_GROUP, {
            'type': 'presence_update',
            'data': json.loads(json.dumps(payload, cls=DjangoJSONEncoder)),
        })
    except Exception as e:
        logger.warning(f"Presence broadcast for {payload.get('user_id')} failed: {e}")
        return False
    return True
