"""Engine communication and match-analysis layer for the chess coach."""
