"""
Telephony provider client for PSTN calls and SMS.

Usage:
    from channels.telephony import TwilioClient
    client = TwilioClient(account_sid, auth_token, from_number)
    result = await client.create_call(to="+819012345678", url=twiml_url)
"""
from channels.telephony.twilio_client import TwilioClient

__all__ = ["TwilioClient"]
