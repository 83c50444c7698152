"""Voice client: session, peer links and audio."""
