"""SQLite persistence shared by execution and predictive subsystems."""
