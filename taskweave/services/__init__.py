"""Operations exposed to the CLI and agents."""
