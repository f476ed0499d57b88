from azure.identity.aio import DefaultAzureCredential

from reminder_sync.helpers.cache import lru_acache
from reminder_sync.helpers.http import azure_transport


@lru_acache()
async def credential() -> DefaultAzureCredential:
    return DefaultAzureCredential(
        # Performance
        transport=await azure_transport(),
    )
