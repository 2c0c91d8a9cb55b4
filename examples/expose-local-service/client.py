from relaytunnel.client import run_session
from relaytunnel.common.auth import PasswordAuth
from relaytunnel.common.const import SessionOutcome
from relaytunnel.config import SessionConfig

import asyncio


async def main():
    # Expose the local web server on 127.0.0.1:8080 as port 9000 on the relay's network
    config = SessionConfig(relay_host='relay.example.com',
                           username='tunnel',
                           auth=PasswordAuth('password'),
                           host_key=open('relay_host_key.pub').read(),
                           remote_port=9000,
                           target_port=8080)
    while await run_session(config) is SessionOutcome.RECOVERABLE_FAILURE:
        await asyncio.sleep(5)


if __name__ == "__main__":
    asyncio.run(main())
