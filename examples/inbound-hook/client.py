from relaytunnel.client import TunnelSession
from relaytunnel.common.auth import KeyAuth
from relaytunnel.common.listener import InboundConnection
from relaytunnel.config import SessionConfig

import asyncio


async def greet(inbound: InboundConnection):
    # The hook owns the connection, so it must close it
    inbound.write(f'Hello {inbound.display_name}\n'.encode())
    await inbound.drain()
    inbound.close()


async def main():
    events = asyncio.Queue()
    config = SessionConfig(relay_host='relay.example.com',
                           username='tunnel',
                           auth=KeyAuth(['~/.ssh/id_ed25519']),
                           host_key=open('relay_host_key.pub').read(),
                           remote_port=9000,
                           target_port=0,
                           inbound_connection_hook=greet,
                           events=events)
    session = TunnelSession(config)
    session_task = asyncio.ensure_future(session.run())
    # Someone else may watch the events queue to know when the relay went away
    await events.get()
    print(f'Session ended with {await session_task}')


if __name__ == "__main__":
    asyncio.run(main())
