"""Sheet order sync worker: reads linked spreadsheets and materializes orders."""
