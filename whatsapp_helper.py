"""
WhatsApp Notification Helper
Sends exam notifications as WhatsApp text messages via the Meta Cloud API.

Configuration via environment variables:
- WHATSAPP_ACCESS_TOKEN: Cloud API bearer token
- WHATSAPP_PHONE_NUMBER_ID: sending phone number id
- WHATSAPP_API_VERSION: Graph API version (default: v18.0)
"""

import os
import logging
import requests
from typing import Dict, Any

logger = logging.getLogger(__name__)


def get_whatsapp_config():
    """Get WhatsApp configuration from environment (reload each time for testing)."""
    return {
        'access_token': os.getenv('WHATSAPP_ACCESS_TOKEN', ''),
        'phone_number_id': os.getenv('WHATSAPP_PHONE_NUMBER_ID', ''),
        'api_version': os.getenv('WHATSAPP_API_VERSION', 'v18.0'),
    }


def is_whatsapp_configured() -> bool:
    cfg = get_whatsapp_config()
    return bool(cfg['access_token'] and cfg['phone_number_id'])


class WhatsAppSender:
    """WhatsApp message sender for the Meta Cloud API"""

    def __init__(self, access_token, phone_number_id, api_version='v18.0', http=None):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.http = http or requests

    @classmethod
    def from_env(cls):
        cfg = get_whatsapp_config()
        return cls(cfg['access_token'], cfg['phone_number_id'], cfg['api_version'])

    def _normalize_phone(self, phone: str) -> str:
        """Normalize phone number to international format"""
        if not phone:
            return ''

        # Remove all non-digit characters except +
        phone = ''.join(c for c in phone if c.isdigit() or c == '+')

        if not phone.startswith('+'):
            # Assume Indian number if 10 digits
            if len(phone) == 10:
                phone = '+91' + phone
            else:
                phone = '+' + phone

        return phone

    def send_message(self, to_phone: str, message: str) -> Dict[str, Any]:
        """
        Send a WhatsApp text message

        Returns:
            dict with 'success', 'message_id', 'error' keys
        """
        to_phone = self._normalize_phone(to_phone)
        if not to_phone:
            return {'success': False, 'message_id': None, 'error': 'Invalid phone number'}

        url = f'https://graph.facebook.com/{self.api_version}/{self.phone_number_id}/messages'
        headers = {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json'
        }
        # Text messages only reach users inside the 24-hour window
        payload = {
            'messaging_product': 'whatsapp',
            'recipient_type': 'individual',
            'to': to_phone.lstrip('+'),
            'type': 'text',
            'text': {'body': message}
        }

        try:
            logger.info(f"[Meta API] Sending to {to_phone}")
            response = self.http.post(url, headers=headers, json=payload, timeout=30)

            if response.status_code in [200, 201]:
                data = response.json()
                message_id = data.get('messages', [{}])[0].get('id')
                logger.info(f"[Meta API] Message sent successfully. ID: {message_id}")
                return {'success': True, 'message_id': message_id, 'error': None}

            try:
                error = response.json().get('error', {}).get('message', response.text)
            except ValueError:
                error = response.text
            logger.error(f"[Meta API] Error: {error}")
            return {'success': False, 'message_id': None, 'error': error}

        except requests.RequestException as e:
            logger.error(f"[Meta API] Exception: {e}")
            return {'success': False, 'message_id': None, 'error': str(e)}
