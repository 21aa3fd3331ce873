"""Backend adapters: the capability contract and the default web-client adapter."""
