#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
import sys
from auth import generate_token
from client import BlackholeClient
from config import *
from server import BlackholeServer

logging.basicConfig(level=logging.INFO,format="%(asctime)s [%(levelname)s] %(message)s")
logger=logging.getLogger(__name__)

USAGE="""Server mode:
  blackhole --server [--password <secret>] --tele-port-to <exposedPort> --wait-port-on <controlPort>
Example:
  blackhole --server --password secret --tele-port-to 5666 --wait-port-on 4777

Client mode:
  blackhole --teleport <localTarget> [--password <secret>] <serverAddress>
Example:
  blackhole --teleport localhost:3389 --password secret 192.168.1.100

Config file:
  blackhole -c blackhole.toml
  blackhole --generate-config server -o blackhole.toml
"""

def setup_logging(level,log_file):
    level=getattr(logging,level.upper(),logging.INFO)
    logging.getLogger().setLevel(level)
    if log_file:
        handler=logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logging.getLogger().addHandler(handler)

def build_parser():
    parser=argparse.ArgumentParser(prog="blackhole",description="Expose a private TCP service through a public server over one multiplexed connection",epilog=USAGE,formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("server_address",nargs="?",help="Control server address (client mode)")
    parser.add_argument("--server",action="store_true",help="Run in server mode")
    parser.add_argument("--teleport",metavar="HOST:PORT",help="Local service to expose (client mode)")
    parser.add_argument("--password",help="Shared secret sent as the first line of the control connection")
    parser.add_argument("--tele-port-to",dest="exposed_port",default=DEFAULT_EXPOSED_PORT,help=f"Public port exposed by the server (default: {DEFAULT_EXPOSED_PORT})")
    parser.add_argument("--wait-port-on",dest="control_port",default=DEFAULT_CONTROL_PORT,help=f"Control port (default: {DEFAULT_CONTROL_PORT})")
    parser.add_argument("--grace-period",default=DEFAULT_GRACE_PERIOD,help=f"Seconds the exposed port stays open after the control connection drops (default: {DEFAULT_GRACE_PERIOD})")
    parser.add_argument("-c","--config",help="Path to a TOML configuration file")
    parser.add_argument("--generate-token",action="store_true",help="Generate a shared secret and exit")
    parser.add_argument("--generate-config",choices=("server","client"),help="Print a configuration template with a fresh secret and exit")
    parser.add_argument("-o","--output",help="Write the generated configuration to this path")
    parser.add_argument("--log-level",choices=LOG_LEVELS,help="Override the configured log level")
    parser.add_argument("--log-file",help="Also write logs to this file")
    return parser

def build_config(args):
    if args.config:
        return load_config(args.config)
    if args.server:
        return ServerConfig(control_port=args.control_port,exposed_port=args.exposed_port,secret=args.password,grace_period=args.grace_period)
    if args.teleport:
        return ClientConfig(server=args.server_address,target=args.teleport,control_port=args.control_port,secret=args.password)
    return None

def signal_handler(service,loop):
    logger.info("Received shutdown signal")
    loop.call_soon_threadsafe(service.stop)

def run(service):
    loop=asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    for sig in (signal.SIGTERM,signal.SIGINT):
        try:
            loop.add_signal_handler(sig,lambda:signal_handler(service,loop))
        except NotImplementedError:
            break
    try:
        return loop.run_until_complete(service.run())
    except KeyboardInterrupt:
        logger.info("Stopped")
        return 0
    finally:
        loop.close()

def main(argv=None):
    parser=build_parser()
    args=parser.parse_args(argv)
    if args.generate_token:
        print(generate_token())
        return 0
    if args.generate_config:
        config=generate_config(args.generate_config)
        if args.output:
            write_config(config,args.output)
            logger.info(f"Wrote {args.generate_config} configuration to {args.output}")
        else:
            print(dumps_config(config),end="")
        return 0
    try:
        config=build_config(args)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    if config is None:
        parser.print_help()
        return 1
    setup_logging(args.log_level or config.log_level,args.log_file or config.log_file)
    if config.role=="server":
        return run(BlackholeServer(config))
    return run(BlackholeClient(config))

if __name__=="__main__":
    sys.exit(main())
