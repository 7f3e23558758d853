"""Traffic graph model, builder, appenders and projection."""
