"""HTTP transport for metadata retrieval and outbound SOAP logout."""
