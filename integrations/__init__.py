"""
integrations - OAuth2 connections to procurement platforms
(SAP Ariba, Oracle, Salesforce, Microsoft Dynamics, Coupa, Jaggaer).
"""
