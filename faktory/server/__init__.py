"""RESP replies, worker tracking, server options, set mutations and recurring tasks."""