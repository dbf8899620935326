"""Main entry point for CrowdQueue."""

import argparse
import errno
import logging
import sys

from .config import AppSettings, load_settings
from .errors import ProviderError
from .server import EXTENSION_KEY, create_app


def setup_logging(debug: bool = False) -> None:
    """Configure logging for the application.

    Args:
        debug: Enable debug level logging.
    """
    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=format_str,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from libraries
    logging.getLogger("spotipy").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="CrowdQueue - Let the room vote on what Spotify plays next",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  crowdqueue                      # Serve on 0.0.0.0:3001
  crowdqueue --port 8080          # Serve on another port
  crowdqueue --debug              # Enable debug logging
  crowdqueue --status             # Show configuration and playback, then exit

Environment Variables:
  # Spotify
  SPOTIFY_CLIENT_ID       Spotify App Client ID
  SPOTIFY_CLIENT_SECRET   Spotify App Client Secret
  SPOTIFY_REDIRECT_URI    OAuth redirect URI (default: http://localhost:3001/auth/callback)
  SPOTIFY_REFRESH_TOKEN   Refresh token to start with, skipping /auth/login
  SPOTIFY_TOKEN_STORE     Where to keep the token: memory (default), file or ssm

  # Voting
  VOTING_VOTE_POLICY            perTrack (default), perRound or ttl
  VOTING_VOTE_TTL_SECONDS       Re-vote window for the ttl policy (default: 900)
  VOTING_MIN_VOTES_TO_OVERRIDE  Votes needed to replace the next track (default: 1)
  VOTING_MAX_DURATION_MS        Longest allowed track (default: 600000)
  VOTING_BANNED_ARTISTS         Comma separated artist names
  VOTING_BANNED_TRACKS          Comma separated; 'id:TRACKID' or a name substring
  VOTING_BANNED_USERS           Comma separated; 'ip:ADDRESS' or a username

  # Server
  SERVER_HOST             Bind address (default: 0.0.0.0)
  SERVER_PORT             Port (default: 3001)
        """,
    )

    parser.add_argument(
        "--debug", "-d", action="store_true", help="Enable debug logging"
    )

    parser.add_argument("--host", type=str, help="Bind address (overrides SERVER_HOST)")

    parser.add_argument(
        "--port", "-p", type=int, help="Port to listen on (overrides SERVER_PORT)"
    )

    parser.add_argument(
        "--status",
        "-s",
        action="store_true",
        help="Show current status and configuration, then exit",
    )

    parser.add_argument(
        "--http-log",
        action="store_true",
        help="Log all Spotify HTTP requests/responses to crowdqueue_http.log with timing",
    )

    return parser.parse_args(argv)


def show_status(provider, settings: AppSettings) -> None:
    """Display current status and configuration.

    Args:
        provider: Playback provider.
        settings: Application settings.
    """
    print("\n🎶 CrowdQueue Status")
    print("=" * 50)

    print(f"\n🎵 Service: {provider.service_name}")

    if not provider.is_authorized:
        print("❌ Not authorized. Start the server and open /auth/login")
    else:
        try:
            state = provider.get_playback_state()
        except ProviderError as e:
            print(f"❌ Could not read playback: {e}")
        else:
            if state and state.item:
                icon = "▶️ " if state.is_playing else "⏸️ "
                print(f"{icon} Currently playing: {state.item.name} by {state.item.artists}")
            else:
                print("⏸️  No active playback")

    voting = settings.voting
    print("\n⚙️  Configuration:")
    print(f"   Venue: {settings.server.venue_name}")
    print(f"   Listening on: {settings.server.host}:{settings.server.port}")
    print(f"   Vote policy: {voting.vote_policy.value}")
    print(f"   Vote TTL: {voting.vote_ttl_seconds}s")
    print(f"   Min votes to override: {voting.min_votes_to_override}")
    print(f"   Max track duration: {voting.max_duration_ms // 1000}s")
    print(f"   Banned artists: {len(voting.banned_artists)}")
    print(f"   Banned tracks: {len(voting.banned_tracks)}")
    print(f"   Banned users: {len(voting.banned_users)}")

    print()


def serve(socketio, app, host: str, port: int, retries: int) -> int:
    """Run the server, moving to the next port while the current one is taken.

    Returns:
        The port the server ran on.

    Raises:
        OSError: If no port could be bound.
    """
    logger = logging.getLogger(__name__)
    for attempt in range(retries + 1):
        candidate = port + attempt
        try:
            logger.info(f"🎶 Listening on http://{host}:{candidate}")
            socketio.run(app, host=host, port=candidate, allow_unsafe_werkzeug=True)
            return candidate
        except OSError as e:
            if e.errno != errno.EADDRINUSE or attempt == retries:
                raise
            logger.warning(f"Port {candidate} in use, trying {candidate + 1}...")
    raise OSError(errno.EADDRINUSE, f"No free port in {port}-{port + retries}")


def main(argv=None) -> int:
    """Main entry point.

    Returns:
        Exit code.
    """
    args = parse_args(argv)

    # Load configuration
    try:
        settings = load_settings()
    except Exception as e:
        print(f"❌ Configuration error: {e}")
        print("\nMake sure you have configured the required environment variables.")
        return 1

    if args.host:
        settings.server.host = args.host
    if args.port:
        settings.server.port = args.port

    # Setup logging
    setup_logging(debug=args.debug or settings.debug)
    logger = logging.getLogger(__name__)

    logger.info("🎶 CrowdQueue starting up...")

    app, socketio = create_app(settings, http_logging=args.http_log)
    engine = app.extensions[EXTENSION_KEY]

    # Status mode
    if args.status:
        show_status(engine.provider, settings)
        return 0

    if engine.provider.is_authorized:
        try:
            engine.sync_with_provider()
        except ProviderError as e:
            logger.warning(f"Could not read current playback: {e}")
    else:
        logger.info(
            "🔑 Not authorized yet. Open "
            f"http://localhost:{settings.server.port}/auth/login to connect Spotify"
        )
        print(
            "\n💡 Tip: Make sure your Spotify app is configured with the redirect URI: "
            f"{settings.spotify.redirect_uri}"
        )

    try:
        serve(
            socketio,
            app,
            settings.server.host,
            settings.server.port,
            settings.server.port_retries,
        )

    except KeyboardInterrupt:
        logger.info("Shutting down...")

    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1

    finally:
        engine.shutdown()

    logger.info("👋 Goodbye!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
